from Int64 import Int, to_u64

class Memory(object):
    # Arbitrary read/write primitive over the target's address space.
    def read(self, addr, size):
        raise NotImplementedError

    def write(self, addr, data):
        raise NotImplementedError

    def alloc(self, size):
        raise NotImplementedError

    def addrof(self, obj):
        raise NotImplementedError

    def read_int(self, addr, size):
        return int.from_bytes(self.read(to_u64(addr), size), 'little')

    def write_int(self, addr, value, size):
        value = to_u64(value) & ((1 << size*8) - 1)
        self.write(to_u64(addr), value.to_bytes(size, 'little'))

    def read8(self, addr):
        return self.read_int(addr, 1)

    def read16(self, addr):
        return self.read_int(addr, 2)

    def read32(self, addr):
        return self.read_int(addr, 4)

    def read64(self, addr):
        return self.read_int(addr, 8)

    def write8(self, addr, value):
        self.write_int(addr, value, 1)

    def write16(self, addr, value):
        self.write_int(addr, value, 2)

    def write32(self, addr, value):
        self.write_int(addr, value, 4)

    def write64(self, addr, value):
        self.write_int(addr, value, 8)

    def addr(self, value):
        return Addr(self, value)

class Addr(Int):
    def __init__(self, mem, value=0):
        assert isinstance(mem, Memory), "address needs a memory primitive"
        super(Addr, self).__init__(value)
        self.mem = mem

    def _new(self, value):
        return Addr(self.mem, value)

    def read8(self, offset=0):
        return self.mem.read8(self.value + offset)

    def read16(self, offset=0):
        return self.mem.read16(self.value + offset)

    def read32(self, offset=0):
        return self.mem.read32(self.value + offset)

    def read64(self, offset=0):
        return Int(self.mem.read64(self.value + offset))

    def readp(self, offset=0):
        return Addr(self.mem, self.mem.read64(self.value + offset))

    def read_bytes(self, size, offset=0):
        return self.mem.read(to_u64(self.value + offset), size)

    def write8(self, offset, value):
        self.mem.write8(self.value + offset, value)

    def write16(self, offset, value):
        self.mem.write16(self.value + offset, value)

    def write32(self, offset, value):
        self.mem.write32(self.value + offset, value)

    def write64(self, offset, value):
        self.mem.write64(self.value + offset, value)

    def write_bytes(self, offset, data):
        self.mem.write(to_u64(self.value + offset), data)

class BufferMemory(Memory):
    # Flat bytearray-backed memory, addresses start at `base`.
    def __init__(self, size=0x100000, base=0x10000000):
        self.base = base
        self.buf = bytearray(size)
        self.cursor = 0
        self.objects = dict()

    def _off(self, addr, size):
        off = addr - self.base
        if off < 0 or off + size > len(self.buf):
            raise IndexError("address 0x{:x} out of range".format(addr))
        return off

    def read(self, addr, size):
        off = self._off(addr, size)
        return bytes(self.buf[off:off+size])

    def write(self, addr, data):
        off = self._off(addr, len(data))
        self.buf[off:off+len(data)] = data

    def alloc(self, size):
        addr = self.base + self.cursor
        self.cursor += (size + 15) & ~15
        self._off(addr, size)
        return Addr(self, addr)

    def register(self, obj, addr):
        self.objects[id(obj)] = to_u64(addr)

    def addrof(self, obj):
        return Addr(self, self.objects[id(obj)])
