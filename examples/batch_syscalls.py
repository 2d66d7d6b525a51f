from Emulator import Emulator
from RopEngine import RopEngine

emu = Emulator()
engine = RopEngine(emu, emu.profile(), emu.bases())
chain = engine.new_chain(emu.new_dispatch_object())

# one hijack, many syscalls, every result kept as a dword
num = 8
results = emu.alloc(num * 4)
for i in range(num):
    chain.push_syscall('getpid')
    chain.push_store_retval(results.add(i * 4), 4)
for fd in range(0x100, 0x100 + num):
    chain.push_syscall('close', fd)
chain.push_end()
chain.run()
chain.clean()
print("pids: {}".format([results.read32(i * 4) for i in range(num)]))
print("closed: {}".format([hex(fd) for fd in emu.closed]))
