"""
Go symbol table built from a symbol blob and a line table.

Symbol blob layouts:

  go1.0     (big endian, no prefix)
      value uint32, type byte|0x80, name\\0, gotype uint32

  interim   (prefix fe ff ff ff 00 00, little endian)
      same as go1.0

  go1.1     (prefix fd ff ff ff 00 00 00 ptrsize, either endian)
      flags byte: type&0x3f, 0x40 wide value, 0x80 has go type
      value     uvarint, or ptrsize bytes if wide
      gotype    ptrsize bytes, if present
      name\\0

Path symbols ('z', 'Z') carry a name of big endian uint16 indices into
the 'f' symbols (whose value is the index and name a path element),
after a leading nul and terminated by a double zero. The elements are
joined with '/'; an empty path pops an include. From go1.3 the blob is
empty and every function comes from the line table.
"""

from typing import Dict, List, Optional, Tuple
from struct import unpack_from
import bisect

from .errors import DecodingError
from .format import SYMTAB_LE, SYMTAB_BE, SYMTAB_OLD_LE
from .pclntab import LineTable, VER_11

TEXT_TYPES = 'TtLl'
ETEXT_NAMES = ('etext', 'runtime.etext')


class Sym:
    """A single entry of the symbol blob."""

    def __init__(self, value: int, kind: str, name: str, gotype: int = 0):
        self.value = value
        self.kind = kind
        self.name = name
        self.gotype = gotype

    def __repr__(self) -> str:
        return f'Sym({self.kind} {self.name} @ {self.value:#x})'

    def _pkg_split(self) -> Tuple[str, str]:
        # ignore dots inside a path-qualified package, e.g. "a/b.c.d"
        slash = self.name.rfind('/')
        dot = self.name.find('.', slash + 1)
        if dot < 0:
            return '', self.name
        return self.name[:dot], self.name[dot + 1:]

    def package_name(self) -> str:
        return self._pkg_split()[0]

    def base_name(self) -> str:
        rest = self._pkg_split()[1]
        dot = rest.rfind('.')
        return rest[dot + 1:] if dot >= 0 else rest


class _Include:
    def __init__(self, path: str, start: int, prev: Optional['_Include']):
        self.path = path
        self.start = start
        self.offset = 0
        self.prev = prev


class Obj:
    """An object file of a pre-go1.2 binary.

    paths is the run of path symbols preceding the object's functions,
    each marking the absolute line at which a file is entered (or, for
    an empty name, left).
    """

    def __init__(self, paths: List[Sym]):
        self.paths = paths

    def __repr__(self) -> str:
        return f'Obj(paths={len(self.paths)})'

    def line_from_aline(self, aline: int) -> Tuple[str, int]:
        """Convert an absolute line to (file, line), or ('', 0) if unknown."""
        root = _Include('', 0, None)
        tos = root
        for sym in self.paths:
            if sym.value > aline:
                break
            if sym.value == 1:
                tos = _Include(sym.name, sym.value, root)
            elif not sym.name:
                if tos is root:
                    return '', 0
                tos.prev.offset += sym.value - tos.start
                tos = tos.prev
            else:
                tos = _Include(sym.name, sym.value, tos)

        if tos is root:
            return '', 0
        return tos.path, aline - tos.start - tos.offset + 1


class Func:
    """A function occupying the half-open pc range [entry, end)."""

    def __init__(self, entry: int, end: int, name: str, obj: Optional[Obj] = None):
        self.entry = entry
        self.end = end
        self.name = name
        self.obj = obj

    def __repr__(self) -> str:
        return f'Func({self.name} [{self.entry:#x}, {self.end:#x}))'

    def contains(self, pc: int) -> bool:
        return self.entry <= pc < self.end


def _path_name(pairs: bytes, fname: Dict[int, str], off: int) -> str:
    name = ''
    for i in range(0, len(pairs) - 1, 2):
        idx, = unpack_from('>H', pairs, i)
        if idx not in fname:
            raise DecodingError(off + i, f'bad filename code {idx}')
        if name and not name.endswith('/'):
            name += '/'
        name += fname[idx]
    return name


def parse_symtab(data: bytes) -> List[Sym]:
    """Decode every symbol in a symbol blob."""
    syms: List[Sym] = []
    if not data:
        return syms

    fname: Dict[int, str] = {}

    order = '>'
    new_table = False
    pos = 0
    if data.startswith(SYMTAB_OLD_LE):
        order = '<'
        pos = 6
    elif data.startswith(SYMTAB_BE):
        new_table = True
    elif data.startswith(SYMTAB_LE):
        new_table = True
        order = '<'

    ptrsize = 0
    if new_table:
        if len(data) < 8:
            raise DecodingError(len(data), 'unexpected EOF')
        ptrsize = data[7]
        if ptrsize not in (4, 8):
            raise DecodingError(7, f'invalid pointer size {ptrsize}')
        pos = 8
    ptrcode = f'{order}{"Q" if ptrsize == 8 else "I"}'

    def need(n: int):
        if pos + n > len(data):
            raise DecodingError(len(data), 'unexpected EOF')

    while len(data) - pos >= 4:
        gotype = 0
        if new_table:
            flags = data[pos]
            pos += 1
            typ = flags & 0x3F
            typ = chr(typ + ord('A')) if typ < 26 else chr(typ - 26 + ord('a'))
            if flags & 0x40:
                need(ptrsize)
                value, = unpack_from(ptrcode, data, pos)
                pos += ptrsize
            else:
                value = 0
                shift = 0
                while pos < len(data) and data[pos] & 0x80:
                    value |= (data[pos] & 0x7F) << shift
                    shift += 7
                    pos += 1
                need(1)
                value |= data[pos] << shift
                pos += 1
            if flags & 0x80:
                need(ptrsize)
                gotype, = unpack_from(ptrcode, data, pos)
                pos += ptrsize
        else:
            need(5)
            value, = unpack_from(f'{order}I', data, pos)
            raw = data[pos + 4]
            if raw & 0x80 == 0:
                raise DecodingError(pos + 4, f'bad symbol type {raw:#x}')
            typ = chr(raw & 0x7F)
            pos += 5

        if typ in 'zZ':
            # skip past the first nul, then scan for a double nul
            nul = data.find(b'\x00', pos)
            start = len(data) if nul < 0 else nul + 1
            end = start
            while end + 2 <= len(data) and data[end:end + 2] != b'\x00\x00':
                end += 2
            if end + 2 > len(data):
                raise DecodingError(len(data), 'unexpected EOF')
            name = _path_name(data[start:end], fname, start)
            pos = end + 2
        else:
            end = data.find(b'\x00', pos)
            if end < 0:
                raise DecodingError(len(data), 'unexpected EOF')
            name = data[pos:end].decode('utf-8', 'replace')
            pos = end + 1

        if not new_table:
            need(4)
            gotype, = unpack_from(f'{order}I', data, pos)
            pos += 4

        if typ == 'f':
            fname[value & 0xFFFF] = name
        syms.append(Sym(value, typ, name, gotype))
    return syms


def _text_funcs(syms: List[Sym]) -> Tuple[List[Obj], List[Func]]:
    """Build functions from text symbols, each owned by the object whose
    path symbols precede it."""
    objs: List[Obj] = []
    obj = None
    text: List[Tuple[Sym, Optional[Obj]]] = []
    i = 0
    while i < len(syms):
        sym = syms[i]
        if sym.kind in 'zZ':
            end = i + 1
            while end < len(syms) and syms[end].kind in 'zZ':
                end += 1
            obj = Obj(syms[i:end])
            objs.append(obj)
            i = end
            continue
        if sym.kind in TEXT_TYPES:
            text.append((sym, obj))
        i += 1

    text.sort(key=lambda t: t[0].value)
    funcs: List[Func] = []
    unterminated = None
    for sym, owner in text:
        if unterminated is not None:
            unterminated.end = sym.value
            unterminated = None
        if sym.name in ETEXT_NAMES:
            continue
        unterminated = Func(sym.value, sym.value + 1, sym.name, owner)
        funcs.append(unterminated)
    return objs, funcs


class SymbolTable:
    """Resolves program counters to source positions and functions.

    Functions come from the line table when it is a go1.2+ table,
    otherwise from the text symbols of the symbol blob, with lines from
    the old line table mapped to files through each function's object.
    """

    syms: List[Sym]
    funcs: List[Func]
    objs: List[Obj]
    line_table: LineTable

    def __init__(self, symdata: bytes, line_table: LineTable):
        self.line_table = line_table
        self.syms = parse_symtab(symdata)
        self.objs = []

        if line_table.is_go12():
            self.funcs = [Func(entry, end, name) for entry, end, name in line_table.funcs()]
            known = {s.name for s in self.syms}
            self.syms.extend(Sym(f.entry, 'T', f.name) for f in self.funcs if f.name not in known)
        else:
            self.objs, self.funcs = _text_funcs(self.syms)

        self.funcs.sort(key=lambda f: f.entry)
        self._entries = [f.entry for f in self.funcs]
        self._funcs_by_name: Dict[str, Func] = {}
        for f in self.funcs:
            self._funcs_by_name.setdefault(f.name, f)
        self._syms_by_name: Dict[str, Sym] = {}
        for s in self.syms:
            self._syms_by_name.setdefault(s.name, s)

    def __repr__(self) -> str:
        return f'SymbolTable(funcs={len(self.funcs)}, syms={len(self.syms)})'

    def pc_to_func(self, pc: int) -> Optional[Func]:
        idx = bisect.bisect_right(self._entries, pc) - 1
        if idx < 0:
            return None
        func = self.funcs[idx]
        return func if func.contains(pc) else None

    def pc_to_line(self, pc: int) -> Tuple[str, int, Optional[Func]]:
        """Return (file, line, func) for pc.

        A pc inside a function without line information yields line 0; a
        pc outside every function yields ('', 0, None).
        """
        func = self.pc_to_func(pc)
        if func is None:
            return '', 0, None
        if not self.line_table.is_go12():
            if func.obj is None or self.line_table.version != VER_11:
                return '', 0, func
            file, line = func.obj.line_from_aline(self.line_table.pc_to_line(pc))
            return file, line, func
        file = self.line_table.pc_to_file(pc)
        line = self.line_table.pc_to_line(pc)
        return file, max(line, 0), func

    def lookup_func(self, name: str) -> Optional[Func]:
        return self._funcs_by_name.get(name)

    def lookup_sym(self, name: str) -> Optional[Sym]:
        return self._syms_by_name.get(name)

    def sym_by_addr(self, addr: int) -> Optional[Sym]:
        for s in self.syms:
            if s.value == addr and s.kind in 'TtLlDdBb':
                return s
        return None


def new_table(symdata: bytes, pclndata: bytes, text_start: int) -> SymbolTable:
    return SymbolTable(symdata, LineTable(pclndata, text_start))
