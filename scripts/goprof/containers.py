"""
Symbol data extraction from executable containers.

Each extractor opens an executable as one container format and returns
the raw symbol blob, the raw line table blob, and the address of the
text section:

    extractor(filename) -> (symdata, pclndata, text_start)

Extractors raise on any failure and close the file on every path.
`load_symbols` tries them in order and keeps the first that succeeds.

------ PE ------
    DOS header, e_lfanew at 0x3c -> 'PE\\0\\0'
    COFF header (20 bytes), optional header, section table (40 bytes each)

Section names longer than 8 bytes are stored as '/<offset>' into the
COFF string table, which follows the symbol table. The text start is
ImageBase + VirtualAddress of .text.

------ Mach-O ------
    mach_header[_64], then ncmds load commands. Sections live inside
    LC_SEGMENT / LC_SEGMENT_64 commands.
"""

from typing import BinaryIO, Callable, Dict, List, Tuple
from struct import calcsize, unpack, unpack_from, error as StructError
import logging

from elftools.common.exceptions import ELFError
from elftools.elf.elffile import ELFFile

from .errors import NoSymbolsError
from .format import (ELF_SYMTAB, ELF_PCLNTAB, ELF_TEXT,
                     PE_SYMTAB, PE_PCLNTAB, PE_TEXT,
                     MACHO_SYMTAB, MACHO_PCLNTAB, MACHO_TEXT)
from .symtab import SymbolTable, new_table

logger = logging.getLogger(__name__)

SymbolData = Tuple[bytes, bytes, int]

PE_COFF_FORMAT = '<HHIIIHH'
PE_COFF_SIZE = calcsize(PE_COFF_FORMAT)
assert PE_COFF_SIZE == 20

PE_SECTION_FORMAT = '<8sIIIIIIHHI'
PE_SECTION_SIZE = calcsize(PE_SECTION_FORMAT)
assert PE_SECTION_SIZE == 40

PE_SYMBOL_SIZE = 18
PE32_MAGIC = 0x10B
PE32PLUS_MAGIC = 0x20B

MACHO_MAGICS = {
    0xFEEDFACE: ('<', False),
    0xCEFAEDFE: ('>', False),
    0xFEEDFACF: ('<', True),
    0xCFFAEDFE: ('>', True),
}
MACHO_FAT_MAGICS = (0xCAFEBABE, 0xBEBAFECA)

LC_SEGMENT = 0x1
LC_SEGMENT_64 = 0x19

MACHO_SEGMENT_FORMAT = '16sIIIIiiII'
MACHO_SEGMENT_SIZE = 8 + calcsize('<' + MACHO_SEGMENT_FORMAT)
assert MACHO_SEGMENT_SIZE == 56
MACHO_SEGMENT64_FORMAT = '16sQQQQiiII'
MACHO_SEGMENT64_SIZE = 8 + calcsize('<' + MACHO_SEGMENT64_FORMAT)
assert MACHO_SEGMENT64_SIZE == 72

MACHO_SECTION_FORMAT = '16s16sIIIIIIIII'
MACHO_SECTION_SIZE = calcsize('<' + MACHO_SECTION_FORMAT)
assert MACHO_SECTION_SIZE == 68
MACHO_SECTION64_FORMAT = '16s16sQQIIIIIIII'
MACHO_SECTION64_SIZE = calcsize('<' + MACHO_SECTION64_FORMAT)
assert MACHO_SECTION64_SIZE == 80


class Section:
    """A named region of a container: load address and file placement."""

    def __init__(self, name: str, addr: int, offset: int, size: int):
        self.name = name
        self.addr = addr
        self.offset = offset
        self.size = size

    def __repr__(self) -> str:
        return f'Section({self.name}, addr={self.addr:#x}, size={self.size})'


def read_exact(f: BinaryIO, offset: int, size: int) -> bytes:
    f.seek(offset)
    data = f.read(size)
    if len(data) < size:
        raise ValueError(f'unexpected end of file reading {size} bytes at {offset:#x}')
    return data


def read_section(f: BinaryIO, sections: Dict[str, Section], name: str) -> bytes:
    section = sections.get(name)
    if section is None:
        raise ValueError(f'no {name} section')
    return read_exact(f, section.offset, section.size)


# -- ELF --

def elf_symbols(filename: str) -> SymbolData:
    with open(filename, 'rb') as f:
        elf = ELFFile(f)

        symtab = elf.get_section_by_name(ELF_SYMTAB)
        if symtab is None:
            raise ValueError(f'no {ELF_SYMTAB} section')

        pclntab = None
        for name in ELF_PCLNTAB:
            pclntab = elf.get_section_by_name(name)
            if pclntab is not None:
                break
        if pclntab is None:
            raise ValueError(f'no {ELF_PCLNTAB[0]} section')

        text = elf.get_section_by_name(ELF_TEXT)
        if text is None:
            raise ValueError(f'no {ELF_TEXT} section')

        return symtab.data(), pclntab.data(), text['sh_addr']


# -- PE --

def _pe_section_name(f: BinaryIO, raw: bytes, strtab: int) -> str:
    name = raw.rstrip(b'\x00').decode('ascii', 'replace')
    if name.startswith('/') and name[1:].isdigit() and strtab:
        f.seek(strtab + int(name[1:]))
        long_name = bytearray()
        while True:
            c = f.read(1)
            if not c or c == b'\x00':
                break
            long_name += c
        name = long_name.decode('ascii', 'replace')
    return name


def pe_symbols(filename: str) -> SymbolData:
    with open(filename, 'rb') as f:
        dos = f.read(0x40)
        if len(dos) < 0x40 or dos[:2] != b'MZ':
            raise ValueError('not a PE file: missing MZ signature')
        pe_offset, = unpack_from('<I', dos, 0x3C)
        if read_exact(f, pe_offset, 4) != b'PE\x00\x00':
            raise ValueError('not a PE file: missing PE signature')

        coff = read_exact(f, pe_offset + 4, PE_COFF_SIZE)
        _, nsections, _, symtab_ptr, nsyms, opt_size, _ = unpack(PE_COFF_FORMAT, coff)

        opt_offset = pe_offset + 4 + PE_COFF_SIZE
        opt = read_exact(f, opt_offset, opt_size)
        if len(opt) < 2:
            raise ValueError('missing PE optional header')
        magic, = unpack_from('<H', opt, 0)
        if magic == PE32_MAGIC:
            image_base, = unpack_from('<I', opt, 28)
        elif magic == PE32PLUS_MAGIC:
            image_base, = unpack_from('<Q', opt, 24)
        else:
            raise ValueError(f'unknown PE optional header magic {magic:#x}')

        strtab = symtab_ptr + nsyms * PE_SYMBOL_SIZE if symtab_ptr else 0
        table = read_exact(f, opt_offset + opt_size, nsections * PE_SECTION_SIZE)

        sections: Dict[str, Section] = {}
        for i in range(nsections):
            (raw_name, vsize, vaddr, raw_size, raw_ptr,
             _, _, _, _, _) = unpack_from(PE_SECTION_FORMAT, table, i * PE_SECTION_SIZE)
            name = _pe_section_name(f, raw_name, strtab)
            size = min(vsize, raw_size) if vsize else raw_size
            sections.setdefault(name, Section(name, vaddr, raw_ptr, size))

        symdata = read_section(f, sections, PE_SYMTAB)
        pclndata = read_section(f, sections, PE_PCLNTAB)
        text = sections.get(PE_TEXT)
        if text is None:
            raise ValueError(f'no {PE_TEXT} section')

        return symdata, pclndata, image_base + text.addr


# -- Mach-O --

def macho_symbols(filename: str) -> SymbolData:
    with open(filename, 'rb') as f:
        ident = f.read(4)
        if len(ident) < 4:
            raise ValueError('not a Mach-O file: too small')
        magic, = unpack('<I', ident)
        if magic in MACHO_FAT_MAGICS:
            raise ValueError('fat Mach-O files are not supported')
        if magic not in MACHO_MAGICS:
            raise ValueError(f'not a Mach-O file: bad magic {magic:#x}')
        order, is64 = MACHO_MAGICS[magic]

        header_size = 32 if is64 else 28
        header = read_exact(f, 0, header_size)
        ncmds, cmds_size = unpack_from(f'{order}II', header, 16)
        cmds = read_exact(f, header_size, cmds_size)

        if is64:
            seg_format, seg_size = MACHO_SEGMENT64_FORMAT, MACHO_SEGMENT64_SIZE
            sect_format, sect_size = MACHO_SECTION64_FORMAT, MACHO_SECTION64_SIZE
            seg_cmd = LC_SEGMENT_64
        else:
            seg_format, seg_size = MACHO_SEGMENT_FORMAT, MACHO_SEGMENT_SIZE
            sect_format, sect_size = MACHO_SECTION_FORMAT, MACHO_SECTION_SIZE
            seg_cmd = LC_SEGMENT

        sections: Dict[str, Section] = {}
        pos = 0
        for _ in range(ncmds):
            if pos + 8 > len(cmds):
                raise ValueError('truncated Mach-O load commands')
            cmd, cmd_size = unpack_from(f'{order}II', cmds, pos)
            if cmd_size < 8 or pos + cmd_size > len(cmds):
                raise ValueError(f'invalid Mach-O load command size {cmd_size}')

            if cmd == seg_cmd:
                nsects = unpack_from(order + seg_format, cmds, pos + 8)[7]
                if seg_size + nsects * sect_size > cmd_size:
                    raise ValueError('truncated Mach-O segment command')
                for i in range(nsects):
                    fields = unpack_from(order + sect_format, cmds, pos + seg_size + i * sect_size)
                    name = fields[0].rstrip(b'\x00').decode('ascii', 'replace')
                    addr, size, offset = fields[2], fields[3], fields[4]
                    sections.setdefault(name, Section(name, addr, offset, size))
            pos += cmd_size

        symdata = read_section(f, sections, MACHO_SYMTAB)
        pclndata = read_section(f, sections, MACHO_PCLNTAB)
        text = sections.get(MACHO_TEXT)
        if text is None:
            raise ValueError(f'no {MACHO_TEXT} section')

        return symdata, pclndata, text.addr


SYMBOL_EXTRACTORS: List[Tuple[str, Callable[[str], SymbolData]]] = [
    ('elf', elf_symbols),
    ('pe', pe_symbols),
    ('macho', macho_symbols),
]


def load_symbols(filename: str) -> SymbolTable:
    """Build a symbol table from the first container format that works."""
    failures: List[Tuple[str, str]] = []
    for kind, extractor in SYMBOL_EXTRACTORS:
        try:
            symdata, pclndata, text_start = extractor(filename)
        except (OSError, ValueError, StructError, ELFError) as e:
            logger.debug('%s: %s: %s', filename, kind, e)
            failures.append((kind, str(e)))
            continue
        logger.debug('%s: loaded %s symbols, text at %#x', filename, kind, text_start)
        return new_table(symdata, pclndata, text_start)

    raise NoSymbolsError(filename, failures)
