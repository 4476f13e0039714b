"""
Go program counter line table (pclntab) reader.

Format documentation:
======================

    +------------------+ 0x00
    | magic    uint32  |  go1.2 0xfffffffb, go1.16 0xfffffffa,
    | pad      [2]byte |  go1.18 0xfffffff0, go1.20 0xfffffff1
    | quantum  uint8   |
    | ptrsize  uint8   |
    +------------------+ 0x08
    |  header words    |  ptrsize each, layout depends on version
    +------------------+

------ go1.2 ------
    nfunctab uintptr
    functab  [nfunctab]{pc uintptr, funcoff uintptr}, end pc uintptr
    fileoff  uint32     offset of the file table from table start

All other offsets (function data, names, pc-value tables, file names)
are relative to the start of the table.

------ go1.16 ------
    nfunc, nfiles, funcnameOffset, cuOffset, filetabOffset,
    pctabOffset, pclnOffset

------ go1.18, go1.20 ------
    nfunc, nfiles, textStart, funcnameOffset, cuOffset, filetabOffset,
    pctabOffset, pclnOffset

From go1.18 the function table stores uint32 offsets from the start of
the text section instead of absolute pcs.

------ Function data (_func) ------
    entry    uintptr (uint32 entry offset from go1.18)
    nameoff  int32
    args     int32
    deferret uint32
    pcsp     uint32
    pcfile   uint32
    pcln     uint32
    npcdata  uint32
    cuOffset uint32     (go1.16+)

------ pc-value tables ------
A sequence of (value delta, pc delta) uvarint pairs. Value deltas are
zig-zag encoded, pc deltas are in units of the instruction quantum. The
value starts at -1 and the pc at the function entry; the table ends at a
zero value delta after the first pair.

------ go1.0, go1.1 ------
No header. A stream of single-byte codes walked from the start of the
text section with the absolute line at 0:

    0         line += next 4 bytes (big endian), pc += 1
    1..64     line += code, pc += 1
    65..128   line -= code - 64, pc += 1
    129..255  pc += code - 128

The absolute line is mapped to a file and line through the path symbols
of the symbol table.
"""

from typing import List, Optional, Tuple
from struct import unpack_from, error as StructError

from .errors import DecodingError
from .format import GO12_MAGIC, GO116_MAGIC, GO118_MAGIC, GO120_MAGIC, U32_MAX

VER_UNKNOWN = 0
VER_11 = 1
VER_12 = 2
VER_116 = 3
VER_118 = 4
VER_120 = 5

_MAGICS = {
    GO12_MAGIC: VER_12,
    GO116_MAGIC: VER_116,
    GO118_MAGIC: VER_118,
    GO120_MAGIC: VER_120,
}

# _func field indices
FUNC_NAMEOFF = 1
FUNC_PCFILE = 5
FUNC_PCLN = 6
FUNC_CUOFFSET = 8

OLD_QUANTUM = 1


class LineTable:
    """Maps program counters to functions, files and lines."""

    data: bytes
    text_start: int
    version: int
    order: str
    quantum: int
    ptrsize: int
    nfunctab: int
    nfiletab: int

    def __init__(self, data: bytes, text_start: int):
        self.data = data
        self.text_start = text_start
        self.version = VER_UNKNOWN
        self.order = '<'
        self.quantum = 1
        self.ptrsize = 8
        self.nfunctab = 0
        self.nfiletab = 0
        self._funcnametab = 0
        self._cutab = 0
        self._filetab = 0
        self._pctab = 0
        self._funcdata = 0
        self._functab = 0
        self._parse()

    def __repr__(self) -> str:
        return f'LineTable(version={self.version}, funcs={self.nfunctab}, text_start={self.text_start:#x})'

    def is_go12(self) -> bool:
        return self.version >= VER_12

    def _parse(self):
        data = self.data
        if (len(data) < 16 or data[4] != 0 or data[5] != 0
                or data[6] not in (1, 2, 4) or data[7] not in (4, 8)):
            if data:
                self.version = VER_11
            return

        le_magic, = unpack_from('<I', data, 0)
        be_magic, = unpack_from('>I', data, 0)
        if le_magic in _MAGICS:
            self.version = _MAGICS[le_magic]
        elif be_magic in _MAGICS:
            self.version = _MAGICS[be_magic]
            self.order = '>'
        else:
            self.version = VER_11
            return

        self.quantum = data[6]
        self.ptrsize = data[7]

        def offset(word: int) -> int:
            return self._uintptr(8 + word * self.ptrsize)

        if self.version >= VER_118:
            self.nfunctab = offset(0)
            self.nfiletab = offset(1)
            # the header's own textStart may be unrelocated
            self._funcnametab = offset(3)
            self._cutab = offset(4)
            self._filetab = offset(5)
            self._pctab = offset(6)
            self._funcdata = offset(7)
            self._functab = offset(7)
        elif self.version == VER_116:
            self.nfunctab = offset(0)
            self.nfiletab = offset(1)
            self._funcnametab = offset(2)
            self._cutab = offset(3)
            self._filetab = offset(4)
            self._pctab = offset(5)
            self._funcdata = offset(6)
            self._functab = offset(6)
        else:
            self.nfunctab = self._uintptr(8)
            self._functab = 8 + self.ptrsize
            functab_size = (self.nfunctab * 2 + 1) * self._functab_field_size()
            self._filetab = self._uint32(self._functab + functab_size)
            self.nfiletab = self._uint32(self._filetab)

    # -- raw access --

    def _uint32(self, off: int) -> int:
        try:
            return unpack_from(f'{self.order}I', self.data, off)[0]
        except StructError:
            raise DecodingError(off, 'unexpected end of line table') from None

    def _uintptr(self, off: int) -> int:
        code = 'I' if self.ptrsize == 4 else 'Q'
        try:
            return unpack_from(f'{self.order}{code}', self.data, off)[0]
        except StructError:
            raise DecodingError(off, 'unexpected end of line table') from None

    def _cstring(self, off: int) -> str:
        end = self.data.find(b'\x00', off)
        if off >= len(self.data) or end < 0:
            raise DecodingError(off, 'unterminated string')
        return self.data[off:end].decode('utf-8', 'replace')

    def _varint(self, pos: int) -> Tuple[int, int]:
        value = 0
        shift = 0
        while True:
            if pos >= len(self.data):
                raise DecodingError(pos, 'unexpected end of pc-value table')
            b = self.data[pos]
            pos += 1
            value |= (b & 0x7F) << shift
            if b & 0x80 == 0:
                break
            shift += 7
        return value & U32_MAX, pos

    # -- function table --

    def _functab_field_size(self) -> int:
        if self.version >= VER_118:
            return 4
        return self.ptrsize

    def _functab_pc(self, i: int) -> int:
        size = self._functab_field_size()
        off = self._functab + 2 * i * size
        if size == 4:
            pc = self._uint32(off)
        else:
            pc = self._uintptr(off)
        if self.version >= VER_118:
            pc += self.text_start
        return pc

    def _func_off(self, i: int) -> int:
        size = self._functab_field_size()
        off = self._functab + (2 * i + 1) * size
        if size == 4:
            return self._funcdata + self._uint32(off)
        return self._funcdata + self._uintptr(off)

    def _entry_pc(self, func: int) -> int:
        if self.version >= VER_118:
            return self._uint32(func) + self.text_start
        return self._uintptr(func)

    def _field(self, func: int, n: int) -> int:
        first = 4 if self.version >= VER_118 else self.ptrsize
        return self._uint32(func + first + (n - 1) * 4)

    def _func_name(self, nameoff: int) -> str:
        return self._cstring(self._funcnametab + nameoff)

    def find_func(self, pc: int) -> Optional[int]:
        """Return the offset of the _func record containing pc."""
        if not self.is_go12() or self.nfunctab == 0:
            return None
        if pc < self._functab_pc(0) or pc >= self._functab_pc(self.nfunctab):
            return None

        lo, hi = 0, self.nfunctab
        while lo < hi:
            mid = (lo + hi) // 2
            if self._functab_pc(mid) > pc:
                hi = mid
            else:
                lo = mid + 1
        return self._func_off(lo - 1)

    def funcs(self) -> List[Tuple[int, int, str]]:
        """Return (entry, end, name) for every function in the table."""
        result = []
        if not self.is_go12():
            return result
        for i in range(self.nfunctab):
            func = self._func_off(i)
            name = self._func_name(self._field(func, FUNC_NAMEOFF))
            result.append((self._functab_pc(i), self._functab_pc(i + 1), name))
        return result

    # -- pc-value tables --

    def _pcvalue(self, off: int, entry: int, target: int) -> int:
        if off == 0:
            return -1
        pos = self._pctab + off
        value = -1
        pc = entry
        while True:
            first = pc == entry
            uvdelta, pos = self._varint(pos)
            if uvdelta == 0 and not first:
                return -1
            if uvdelta & 1:
                vdelta = ~(uvdelta >> 1)
            else:
                vdelta = uvdelta >> 1
            pcdelta, pos = self._varint(pos)
            pc += pcdelta * self.quantum
            value += vdelta
            if target < pc:
                return value

    def _old_pc_to_line(self, target: int) -> int:
        data = self.data
        pos = 0
        pc = self.text_start
        line = 0
        while pc <= target and pos < len(data):
            code = data[pos]
            pos += 1
            if code == 0:
                if pos + 4 > len(data):
                    break
                line += unpack_from('>I', data, pos)[0]
                pos += 4
            elif code <= 64:
                line += code
            elif code <= 128:
                line -= code - 64
            else:
                pc += OLD_QUANTUM * (code - 128)
                continue
            pc += OLD_QUANTUM
        return line

    def pc_to_line(self, pc: int) -> int:
        """Return the source line for pc, or -1 if unknown.

        For a go1.0 or go1.1 table this is the absolute line across the
        whole program; see symtab.Obj.line_from_aline.
        """
        if self.version == VER_11:
            return self._old_pc_to_line(pc)
        func = self.find_func(pc)
        if func is None:
            return -1
        return self._pcvalue(self._field(func, FUNC_PCLN), self._entry_pc(func), pc)

    def pc_to_file(self, pc: int) -> str:
        """Return the source file for pc, or '' if unknown."""
        func = self.find_func(pc)
        if func is None:
            return ''
        fno = self._pcvalue(self._field(func, FUNC_PCFILE), self._entry_pc(func), pc)

        if self.version == VER_12:
            if fno <= 0 or fno >= self.nfiletab:
                return ''
            return self._cstring(self._uint32(self._filetab + 4 * fno))

        if fno < 0:
            return ''
        cu = self._field(func, FUNC_CUOFFSET)
        fnoff = self._uint32(self._cutab + (cu + fno) * 4)
        if fnoff == U32_MAX:
            return ''
        return self._cstring(self._filetab + fnoff)
