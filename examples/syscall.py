from Emulator import Emulator
from RopEngine import RopEngine

emu = Emulator(uid=1337, pid=4242)
engine = RopEngine(emu, emu.profile(), emu.bases())
chain = engine.new_chain(emu.new_dispatch_object())

chain.syscall('getuid')
print("getuid() = {}".format(chain.return_value.low()))
chain.syscall('getpid')
print("getpid() = {}".format(chain.return_value.low()))
