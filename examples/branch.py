from Emulator import Emulator
from Gadget import Gadget
from RopEngine import RopEngine

emu = Emulator()
engine = RopEngine(emu, emu.profile(), emu.bases())
chain = engine.new_chain(emu.new_dispatch_object())

# write 0x41 to out only when getuid() returns 0
out = emu.alloc(8)
chain.push_syscall('getuid')
chain.start_branch()
chain.push_gadget(Gadget.POP_RSI)
chain.push_value(out)
chain.push_gadget(Gadget.POP_RCX)
chain.push_constant(0x41)
chain.push_gadget(Gadget.STORE_RCX_RSI)
chain.end_branch()
chain.push_end()
chain.dump()
chain.run()
chain.clean()
print("out = 0x{:x} (uid {})".format(out.read8(), emu.uid))
