import logging
import sys

from Emulator import Emulator
from Pivot import CallbackPivot, VtablePivot
from RopEngine import RopEngine

if "-v" in sys.argv:
    logging.basicConfig(level=logging.DEBUG)
else:
    logging.basicConfig(level=logging.INFO)

emu = Emulator()
engine = RopEngine(emu, emu.profile(), emu.bases())

print("self test through a vtable pivot")
chain = engine.new_chain(emu.new_dispatch_object(), VtablePivot)
uid = engine.self_test(chain)
print("getuid() = {}".format(uid.low()))

print("self test through a callback pivot")
chain = engine.new_chain(emu.new_callback_object(), CallbackPivot)
engine.self_test(chain)

msg = emu.alloc(0x20)
msg.write_bytes(0, b"hello from the chain\n")
chain.push_syscall('write', 1, msg, 21)
chain.push_get_retval()
chain.push_end()
chain.dump()
chain.run()
chain.clean()
print("write() = {}, stdout: {!r}".format(chain.return_value.low(), bytes(emu.output[1])))
