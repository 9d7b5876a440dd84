import math
import threading
from enum import Enum
from typing import NamedTuple

# Define the block size as 2^14, which is 16 KB
BLOCK_SIZE = 2 ** 14

SHA1_LENGTH = 20


class PieceState(Enum):
    NOT_STARTED = 0  # Waiting in the queue
    IN_PROGRESS = 1  # Claimed by a worker
    DONE = 2  # Verified and written


class PieceDescriptor(NamedTuple):
    index: int
    length: int
    sha1: bytes


def build_piece_descriptors(file_length, piece_length, piece_hashes):
    """
    Describe every piece of a single-file torrent.

    All pieces are ``piece_length`` long except the last one, which holds
    whatever is left of the file.

    Args:
        file_length (int): Total length of the file in bytes.
        piece_length (int): Nominal piece length in bytes.
        piece_hashes (list[bytes]): Expected SHA-1 digest of each piece.

    Returns:
        list[PieceDescriptor]: One descriptor per piece, ordered by index.

    Raises:
        ValueError: If the number of hashes does not match the number of pieces.
    """
    number_of_pieces = int(math.ceil(float(file_length) / piece_length))

    if len(piece_hashes) != number_of_pieces:
        raise ValueError("Mismatch in number of pieces: {} hashes for {} pieces".format(
            len(piece_hashes), number_of_pieces))

    pieces = []
    last_piece = number_of_pieces - 1

    for i, piece_hash in enumerate(piece_hashes):
        if i == last_piece:
            length = file_length - last_piece * piece_length
        else:
            length = piece_length
        pieces.append(PieceDescriptor(i, length, piece_hash))

    return pieces


def iter_blocks(piece_length, block_size=BLOCK_SIZE):
    """
    Yield ``(offset, length)`` for every block of a piece; the last block may be shorter.
    """
    for offset in range(0, piece_length, block_size):
        yield offset, min(block_size, piece_length - offset)


def effective_piece_length(index, nominal_length, total_length):
    """
    Length of piece ``index``: the nominal length, or what is left of the file for the final piece.
    """
    return max(0, min(nominal_length, total_length - index * nominal_length))


class PieceStateTable(object):
    """
    Thread-safe map of piece index to :class:`PieceState`.

    ``compare_and_set`` is the only way workers claim a piece, so a piece is
    owned by at most one worker at a time.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._states = {}

    def reset(self, number_of_pieces):
        with self._lock:
            self._states = {i: PieceState.NOT_STARTED for i in range(number_of_pieces)}

    def get(self, index):
        with self._lock:
            return self._states[index]

    def set(self, index, state):
        with self._lock:
            self._states[index] = state

    def compare_and_set(self, index, expected, new):
        with self._lock:
            if self._states.get(index) != expected:
                return False
            self._states[index] = new
            return True

    def count(self, state):
        with self._lock:
            return sum(1 for s in self._states.values() if s == state)

    def all_in(self, state):
        with self._lock:
            return all(s == state for s in self._states.values())

    def snapshot(self):
        with self._lock:
            return dict(self._states)

    def clear(self):
        with self._lock:
            self._states.clear()

    def __len__(self):
        with self._lock:
            return len(self._states)
