class Error(Exception):
    pass


class ConfigError(Error):
    pass


class AllocationFailed(Error):
    pass


class NoFreeAddress(AllocationFailed):
    def __init__(self, subnet):
        self.subnet = subnet
        super().__init__("no free IPs available in "+str(subnet))


class TransportFailed(Error):
    pass


class PersistFailed(Error):
    def __init__(self, section):
        self.section = section
        super().__init__("pfSense returned 'false' when restoring the "+section+" config section")


class ObjectNotFound(Error):
    pass


class ObjectConflict(Error):
    pass
