"""
Resolution of profile stacks into source-level frames.
"""

from typing import List, Optional
from datetime import timedelta

from .profile import Profile, StackRecord
from .symtab import SymbolTable


class Frame:
    """A program counter resolved against a symbol table."""

    def __init__(self, pc: int, file: str, line: int, function: Optional[str], offset: int):
        self.pc = pc
        self.file = file
        self.line = line
        self.function = function
        self.offset = offset

    def __repr__(self) -> str:
        return f'Frame({format_frame(self)})'

    @property
    def resolved(self) -> bool:
        return self.function is not None


class ProfileSummary:
    """Headline numbers of a decoded profile."""

    def __init__(self, total_samples: int, distinct_stacks: int, max_samples: int, period: timedelta):
        self.total_samples = total_samples
        self.distinct_stacks = distinct_stacks
        self.max_samples = max_samples
        self.period = period

    def __repr__(self) -> str:
        return (f'ProfileSummary(total={self.total_samples}, distinct={self.distinct_stacks}, '
                f'max={self.max_samples})')

    @property
    def total_time(self) -> timedelta:
        return self.period * self.total_samples

    @property
    def max_time(self) -> timedelta:
        return self.period * self.max_samples


def resolve_pc(table: SymbolTable, pc: int) -> Frame:
    file, line, func = table.pc_to_line(pc)
    if func is None:
        return Frame(pc, file, line, None, 0)
    return Frame(pc, file, line, func.name, pc - func.entry)


def resolve_stack(table: SymbolTable, stack: StackRecord) -> List[Frame]:
    """Resolve every pc of a stack, innermost frame first."""
    return [resolve_pc(table, pc) for pc in stack.pcs]


def summarize(profile: Profile) -> ProfileSummary:
    return ProfileSummary(profile.total_samples, len(profile.stacks),
                          profile.max_count, profile.period)


def format_frame(frame: Frame) -> str:
    if not frame.resolved:
        return f'?? {frame.pc:#x}'
    return f'{frame.file}:{frame.line} {frame.function}+{frame.offset:#x}'
