"""
Legacy cpu profile decoder and Go symbol resolver.

Decodes sampled call stacks from the legacy binary cpu profile format
and resolves their program counters using the symbol and line tables
embedded in an ELF, PE or Mach-O executable.
"""

from .errors import FormatError, DecodingError, NoSymbolsError
from .profile import Profile, ProfileHeader, StackRecord, decode
from .symtab import SymbolTable, Func, Sym
from .containers import load_symbols
from .report import Frame, resolve_stack, summarize

__all__ = [
    'FormatError', 'DecodingError', 'NoSymbolsError',
    'Profile', 'ProfileHeader', 'StackRecord', 'decode',
    'SymbolTable', 'Func', 'Sym', 'load_symbols',
    'Frame', 'resolve_stack', 'summarize',
]
