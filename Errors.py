class RopError(Exception):
    pass

# build-time errors: raised before anything touches target memory
class BuildError(RopError):
    pass

class MissingGadget(BuildError):
    def __init__(self, gadget):
        self.gadget = gadget
        super(MissingGadget, self).__init__("gadget not resolved: {}".format(gadget))

class MissingSyscall(BuildError):
    def __init__(self, name):
        self.name = name
        super(MissingSyscall, self).__init__("unknown syscall: {}".format(name))

class ArgumentOverflow(BuildError):
    pass

class InvalidWidth(BuildError):
    pass

class AlreadySaved(BuildError):
    pass

class NotSaved(BuildError):
    pass

class InvalidBranchState(BuildError):
    pass

class NotEmpty(BuildError):
    pass

class EmptyChain(BuildError):
    pass

class StaleChain(BuildError):
    pass

class ChainOverflow(BuildError):
    pass

class ProfileError(BuildError):
    pass

# run-time: the host process died, nothing to recover
class EmulationFault(RopError):
    def __init__(self, msg, pc=None):
        self.pc = pc
        super(EmulationFault, self).__init__(msg)

class SelfTestFailed(RopError):
    pass
