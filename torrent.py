import hashlib
import logging
import math
import random
import string

import codec
from piece import SHA1_LENGTH, build_piece_descriptors

PEER_ID_ALPHABET = string.ascii_letters + string.digits


class TorrentError(Exception):
    pass


def generate_peer_id():
    """
    Generate a unique peer ID for the client: 20 random ASCII letters and digits.

    Returns:
        bytes: Generated peer ID.
    """
    return ''.join(random.choice(PEER_ID_ALPHABET) for _ in range(20)).encode('ascii')


class Torrent(object):
    def __init__(self):
        # Initialize the attributes of the Torrent class
        self.torrent_file = {}  # Decoded contents of the torrent file
        self.raw = b''  # Original bytes, sliced for the info hash and piece hashes
        self.name: str = ''  # Suggested file name
        self.announce: str = ''  # Tracker URL
        self.length: int = 0  # Length of the single file in the torrent
        self.piece_length: int = 0  # Length of each piece in the torrent
        self.piece_hashes = []  # Expected SHA-1 digest of every piece
        self.info_hash: bytes = b''  # SHA-1 of the exact bytes of the 'info' dictionary

    @classmethod
    def load_from_path(cls, path):
        """
        Load and parse a torrent file from the given path.

        Args:
            path (str): Path to the torrent file.

        Returns:
            Torrent: The parsed torrent.

        Raises:
            TorrentError: If the metadata is missing or inconsistent.
            codec.BencodeError: If the file is not bencode.
        """
        with open(path, 'rb') as file:
            contents = file.read()

        return cls.from_bytes(contents)

    @classmethod
    def from_bytes(cls, contents):
        torrent = cls()
        torrent.raw = bytes(contents)

        decoded = codec.decode_all(torrent.raw)
        if not isinstance(decoded.value, dict):
            raise TorrentError("Expected a dictionary at the top level of the torrent")

        torrent.torrent_file = decoded.value
        info = torrent.torrent_file.get('info')
        if not isinstance(info, dict):
            raise TorrentError("Expected a dictionary for 'info'")

        if 'files' in info:
            raise TorrentError("Multi-file torrents are not supported")

        torrent.announce = _text(_extract(torrent.torrent_file, 'announce', bytes))
        torrent.name = _text(_extract(info, 'name', bytes))
        torrent.length = _extract(info, 'length', int)
        torrent.piece_length = _extract(info, 'piece length', int)
        _extract(info, 'pieces', bytes)

        if torrent.length <= 0 or torrent.piece_length <= 0:
            raise TorrentError("Invalid length {} or piece length {}".format(torrent.length, torrent.piece_length))

        # The 'info' range covers the content between 'd' and 'e'; widen it to the whole dictionary
        info_range = decoded.byte_ranges['info']
        torrent.info_hash = hashlib.sha1(torrent.raw[info_range.start - 1:info_range.end + 2]).digest()

        torrent.piece_hashes = torrent._split_piece_hashes(decoded.byte_ranges['pieces'].slice(torrent.raw))

        logging.debug(torrent.announce)
        logging.debug("%s: %d bytes in %d pieces" % (torrent.name, torrent.length, torrent.number_of_pieces))

        return torrent

    def _split_piece_hashes(self, pieces):
        if len(pieces) % SHA1_LENGTH != 0:
            raise TorrentError("Invalid pieces field: {} bytes is not a multiple of 20".format(len(pieces)))

        hashes = [pieces[i:i + SHA1_LENGTH] for i in range(0, len(pieces), SHA1_LENGTH)]

        expected = int(math.ceil(float(self.length) / self.piece_length))
        if len(hashes) != expected:
            raise TorrentError("Mismatch in number of pieces: {} hashes for {} pieces".format(len(hashes), expected))

        return hashes

    @property
    def number_of_pieces(self):
        return len(self.piece_hashes)

    @property
    def info_hash_hex(self):
        return self.info_hash.hex()

    def piece_descriptors(self):
        return build_piece_descriptors(self.length, self.piece_length, self.piece_hashes)


def _extract(mapping, key, expected_type):
    value = mapping.get(key)
    if not isinstance(value, expected_type) or isinstance(value, bool):
        raise TorrentError("Expected {} for key: {}".format(expected_type.__name__, key))
    return value


def _text(value):
    return value.decode('utf-8', errors='replace')
