"""
Profile and symbol format definitions and constants.
"""

# Profile stream
PROFILE_MAGIC = 0
PROFILE_VERSION = 0
MIN_HEADER_WORDS = 3

# Stop sentinel record: count=0, depth=1, pc=0
SENTINEL_COUNT = 0
SENTINEL_DEPTH = 1

# Reads larger than this are split so a corrupt depth word fails on
# end of stream instead of on allocation.
READ_CHUNK = 1 << 16

# Section names per container format
ELF_SYMTAB = '.gosymtab'
ELF_PCLNTAB = ('.gopclntab', '.data.rel.ro.gopclntab')
ELF_TEXT = '.text'

PE_SYMTAB = '.gosymtab'
PE_PCLNTAB = '.gopclntab'
PE_TEXT = '.text'

MACHO_SYMTAB = '__gosymtab'
MACHO_PCLNTAB = '__gopclntab'
MACHO_TEXT = '__text'

# Line table magics
GO12_MAGIC = 0xFFFFFFFB
GO116_MAGIC = 0xFFFFFFFA
GO118_MAGIC = 0xFFFFFFF0
GO120_MAGIC = 0xFFFFFFF1

# Symbol blob prefixes
SYMTAB_LE = b'\xfd\xff\xff\xff\x00\x00\x00'
SYMTAB_BE = b'\xff\xff\xff\xfd\x00\x00\x00'
SYMTAB_OLD_LE = b'\xfe\xff\xff\xff\x00\x00'

U32_MAX = 0xFFFFFFFF


def byteswap(value: int, size: int) -> int:
    """Reverse the byte order of a size-byte unsigned integer."""
    return int.from_bytes(value.to_bytes(size, 'little'), 'big')
