"""
kopf handlers for Services.

kopf owns the watch, per-object serialization and retries. Every event is
funnelled into ``Reconciler.reconcile``, which reads the Service fresh and
keeps its own finalizer and ports-hash annotation. The delete handler is
optional so kopf never adds a finalizer of its own.
"""
import kopf

from . import metrics
from .service import has_finalizer, is_our_service

REQUEUE_DELAY = 1.0
ERROR_BACKOFF = 5.0


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, memo: kopf.Memo, **_):
    settings.execution.max_workers = memo.workers

    # Services drop unknown status fields, keep kopf's bookkeeping in annotations
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(prefix=memo.annotation_prefix)
    settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(prefix=memo.annotation_prefix)

    # Long-idle watches can stop receiving events, reconnect every ten minutes
    settings.watching.client_timeout = 600
    settings.watching.server_timeout = 600


def is_relevant(spec, meta, memo: kopf.Memo, **_):
    reconciler = memo.reconciler
    if is_our_service({"spec": spec}, reconciler.load_balancer_class):
        return True
    # Services that stopped qualifying still need their teardown
    return has_finalizer({"metadata": meta}, reconciler.finalizer_name)


@kopf.on.resume("services", when=is_relevant, backoff=ERROR_BACKOFF)
@kopf.on.create("services", when=is_relevant, backoff=ERROR_BACKOFF)
@kopf.on.update("services", when=is_relevant, backoff=ERROR_BACKOFF)
@kopf.on.delete("services", when=is_relevant, backoff=ERROR_BACKOFF, optional=True)
def reconcile_service(name, namespace, memo: kopf.Memo, **_):
    with metrics.RECONCILE_DURATION.time():
        try:
            result = memo.reconciler.reconcile(namespace, name)
        except Exception:
            metrics.RECONCILE_TOTAL.labels(result=metrics.RESULT_ERROR).inc()
            metrics.RECONCILE_ERRORS.inc()
            raise

    if result.requeue or result.requeue_after:
        metrics.RECONCILE_TOTAL.labels(result=metrics.RESULT_REQUEUE).inc()
        raise kopf.TemporaryError("reconcile of "+namespace+"/"+name+" requeued", delay=result.requeue_after or REQUEUE_DELAY)

    metrics.RECONCILE_TOTAL.labels(result=metrics.RESULT_SUCCESS).inc()
