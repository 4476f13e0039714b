"""
Decoder for the legacy cpu profile format.

Format documentation:
======================

All values are unsigned words. The word width (4 or 8 bytes) and byte
order are detected from the preamble, see `framer.WordReader`.

    [0][header_words]                      preamble
    [version=0][period_us][extra...]       header, header_words long
    [count][depth][pc * depth]             sample record, repeated
    [0][1][0]                              stop sentinel

Records with the same pc sequence are the same stack and are merged by
summing their counts. A stream that ends cleanly where the next record's
count is expected is still decoded, but marked incomplete.
"""

from typing import BinaryIO, Dict, List, Optional, Tuple
from datetime import timedelta
import logging

from .errors import FormatError
from .format import PROFILE_VERSION, SENTINEL_COUNT, SENTINEL_DEPTH
from .framer import WordReader

logger = logging.getLogger(__name__)


class ProfileHeader:
    """Header words following the preamble."""

    def __init__(self, version: int, period: timedelta, extra: Tuple[int, ...] = ()):
        self.version = version
        self.period = period
        self.extra = extra

    def __repr__(self) -> str:
        return f'ProfileHeader(version={self.version}, period={self.period}, extra={list(self.extra)})'


class StackRecord:
    """A distinct call stack and the number of samples that hit it."""

    def __init__(self, pcs: Tuple[int, ...], count: int):
        self.pcs = pcs
        self.count = count

    def __repr__(self) -> str:
        pcs = ', '.join(f'{pc:#x}' for pc in self.pcs)
        return f'StackRecord(count={self.count}, pcs=[{pcs}])'


class Profile:
    """A decoded cpu profile, stacks sorted by descending sample count."""

    header: ProfileHeader
    stacks: List[StackRecord]
    total_samples: int
    incomplete: bool

    def __init__(self, header: ProfileHeader, stacks: List[StackRecord],
                 total_samples: int, incomplete: bool = False):
        self.header = header
        self.stacks = stacks
        self.total_samples = total_samples
        self.incomplete = incomplete

    def __repr__(self) -> str:
        return (f'Profile(total_samples={self.total_samples}, stacks={len(self.stacks)}, '
                f'incomplete={self.incomplete})')

    @property
    def period(self) -> timedelta:
        return self.header.period

    @property
    def max_count(self) -> int:
        return self.stacks[0].count if self.stacks else 0

    def hottest(self) -> List[StackRecord]:
        """Return every stack tied for the maximum sample count."""
        top = self.max_count
        result = []
        for stack in self.stacks:
            if stack.count != top:
                break
            result.append(stack)
        return result

    def duration(self, samples: int) -> timedelta:
        return self.header.period * samples

    @staticmethod
    def load(filename: str) -> 'Profile':
        with open(filename, 'rb') as f:
            return decode(f)


def read_header(reader: WordReader) -> ProfileHeader:
    words = reader.read_words(reader.header_words)
    version, period = words[0], words[1]
    if version != PROFILE_VERSION:
        raise FormatError('corrupt profile')
    return ProfileHeader(version, timedelta(microseconds=period), tuple(words[2:]))


def read_record(reader: WordReader) -> Optional[Tuple[int, Tuple[int, ...]]]:
    """Read one (count, pcs) record, or None at the stop sentinel.

    Raises EOFError if the stream ends before the record starts.
    """
    count = reader.read_word()
    try:
        depth = reader.read_word()
    except EOFError:
        raise FormatError('truncated record: missing stack depth') from None
    pcs = reader.read_words(depth)

    if count == SENTINEL_COUNT and depth == SENTINEL_DEPTH and pcs[0] == 0:
        return None
    return count, pcs


def decode(stream: BinaryIO) -> Profile:
    """Decode a profile stream, aggregating identical stacks."""
    reader = WordReader(stream)
    header = read_header(reader)

    counts: Dict[Tuple[int, ...], int] = {}
    total = 0
    incomplete = False

    while True:
        try:
            record = read_record(reader)
        except EOFError:
            logger.warning('incomplete cpu profile')
            incomplete = True
            break
        if record is None:
            break

        count, pcs = record
        if not pcs:
            logger.debug('skipping record with empty stack (count=%d)', count)
            continue
        counts[pcs] = counts.get(pcs, 0) + count
        total += count

    stacks = [StackRecord(pcs, count) for pcs, count in counts.items()]
    stacks.sort(key=lambda s: s.count, reverse=True)
    return Profile(header, stacks, total, incomplete)
