"""
Word framing for the legacy cpu profile stream.

The stream is a sequence of unsigned machine words, but neither the word
width nor the byte order is recorded explicitly. Both are recovered from
the preamble:

    [0][header_words]

  - The first 32-bit little-endian word must be zero.
  - If the next 32-bit word is also zero, the profile was written with
    64-bit words and the header word count is the following 64-bit word.
  - The header word count is small, so a value with any bit set in the
    upper half of the word means the stream is big-endian.
"""

from typing import BinaryIO, Tuple
from struct import unpack

from .errors import FormatError
from .format import PROFILE_MAGIC, MIN_HEADER_WORDS, READ_CHUNK, byteswap


class WordReader:
    """Reads words of the detected width and byte order from a stream."""

    word_size: int
    byte_order: str
    header_words: int

    def __init__(self, stream: BinaryIO):
        self._stream = stream
        self.word_size = 4
        self.byte_order = '<'
        self.header_words = self._detect()

    def __repr__(self) -> str:
        order = 'little' if self.byte_order == '<' else 'big'
        return f'WordReader(word_size={self.word_size}, order={order}, header_words={self.header_words})'

    def _detect(self) -> int:
        magic = self._preamble_word(4)
        if magic != PROFILE_MAGIC:
            raise FormatError('corrupt profile')

        count = self._preamble_word(4)
        if count == 0:
            # 64-bit stream: the two zero words were one zero word
            self.word_size = 8
            count = self._preamble_word(8)

        if count >> (self.word_size * 8 // 2) != 0:
            self.byte_order = '>'
            count = byteswap(count, self.word_size)

        if count < MIN_HEADER_WORDS:
            raise FormatError('corrupt profile')
        return count

    def _preamble_word(self, size: int) -> int:
        data = self.read_raw(size)
        if len(data) < size:
            raise FormatError('truncated profile preamble')
        return int.from_bytes(data, 'little')

    def read_raw(self, nbytes: int) -> bytes:
        """Read up to nbytes, returning fewer only at end of stream."""
        # raw streams (pipes, sockets) may return short reads before eof
        chunks = []
        remaining = nbytes
        while remaining > 0:
            chunk = self._stream.read(min(remaining, READ_CHUNK))
            if not chunk:
                break
            chunks.append(chunk)
            remaining -= len(chunk)
        return b''.join(chunks)

    def unpack_words(self, data: bytes) -> Tuple[int, ...]:
        count = len(data) // self.word_size
        code = 'I' if self.word_size == 4 else 'Q'
        return unpack(f'{self.byte_order}{count}{code}', data[:count * self.word_size])

    def read_word(self) -> int:
        """Read one word, raising EOFError if the stream is exhausted."""
        data = self.read_raw(self.word_size)
        if not data:
            raise EOFError('end of profile stream')
        if len(data) < self.word_size:
            raise FormatError('truncated word at end of profile')
        return self.unpack_words(data)[0]

    def read_words(self, n: int) -> Tuple[int, ...]:
        """Read exactly n words, raising FormatError on a short read."""
        nbytes = n * self.word_size
        data = self.read_raw(nbytes)
        if len(data) < nbytes:
            raise FormatError(f'expected {n} words, got {len(data) // self.word_size}')
        return self.unpack_words(data)
