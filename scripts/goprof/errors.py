"""
Exception types raised while decoding profiles and loading symbols.
"""

from typing import List, Tuple


class FormatError(ValueError):
    """The profile stream violates the sample encoding."""


class DecodingError(ValueError):
    """A symbol blob or line table blob could not be decoded."""

    def __init__(self, offset: int, msg: str):
        super().__init__(f'decoding symbol table: {msg} at byte {offset:#x}')
        self.offset = offset
        self.msg = msg


class NoSymbolsError(ValueError):
    """No container format yielded symbol data for an executable."""

    def __init__(self, filename: str, failures: List[Tuple[str, str]]):
        self.filename = filename
        self.failures = failures
        lines = [f'no symbols could be loaded from {filename!r}']
        lines.extend(f'{kind}: {msg}' for kind, msg in failures)
        super().__init__('\n'.join(lines))
