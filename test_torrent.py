import hashlib
import os
import tempfile
import unittest

import bcoding

import codec
from torrent import Torrent, TorrentError, generate_peer_id

PIECE_HASHES = [hashlib.sha1(bytes([i])).digest() for i in range(3)]


def info_dict(**overrides):
    info = {
        'length': 40000,
        'name': 'sample.txt',
        'piece length': 16384,
        'pieces': b''.join(PIECE_HASHES),
    }
    info.update(overrides)
    return info


class TorrentTestCase(unittest.TestCase):
    def setUp(self):
        self.info = info_dict()
        self.contents = bcoding.bencode({'announce': 'http://tracker.example/announce', 'info': self.info})

    def test_from_bytes(self):
        torrent = Torrent.from_bytes(self.contents)

        self.assertEqual(torrent.announce, 'http://tracker.example/announce')
        self.assertEqual(torrent.name, 'sample.txt')
        self.assertEqual(torrent.length, 40000)
        self.assertEqual(torrent.piece_length, 16384)
        self.assertEqual(torrent.piece_hashes, PIECE_HASHES)
        self.assertEqual(torrent.number_of_pieces, 3)

    def test_info_hash(self):
        torrent = Torrent.from_bytes(self.contents)

        self.assertEqual(torrent.info_hash, hashlib.sha1(bcoding.bencode(self.info)).digest())
        self.assertEqual(torrent.info_hash_hex, torrent.info_hash.hex())

    def test_info_hash_of_unsorted_info(self):
        # Keys out of order must be hashed as they appear, not re-sorted
        info = {'pieces': b''.join(PIECE_HASHES), 'name': 'sample.txt', 'piece length': 16384, 'length': 40000}
        contents = codec.encode({'info': info, 'announce': 'http://tracker.example/announce'})

        torrent = Torrent.from_bytes(contents)

        self.assertEqual(torrent.info_hash, hashlib.sha1(codec.encode(info)).digest())
        self.assertNotEqual(torrent.info_hash, hashlib.sha1(codec.encode(dict(sorted(info.items())))).digest())

    def test_piece_descriptors(self):
        pieces = Torrent.from_bytes(self.contents).piece_descriptors()

        self.assertEqual([p.length for p in pieces], [16384, 16384, 40000 - 2 * 16384])
        self.assertEqual(pieces[2].sha1, PIECE_HASHES[2])

    def test_load_from_path(self):
        with tempfile.TemporaryDirectory() as directory:
            path = os.path.join(directory, 'sample.torrent')
            with open(path, 'wb') as f:
                f.write(self.contents)

            torrent = Torrent.load_from_path(path)

        self.assertEqual(torrent.length, 40000)

    def test_rejects_multi_file(self):
        info = info_dict(files=[{'length': 1, 'path': ['a']}])
        contents = bcoding.bencode({'announce': 'http://t', 'info': info})

        with self.assertRaises(TorrentError):
            Torrent.from_bytes(contents)

    def test_rejects_bad_pieces(self):
        for info in (info_dict(pieces=b'x' * 21), info_dict(pieces=b''.join(PIECE_HASHES[:2])),
                     info_dict(length=0)):
            contents = bcoding.bencode({'announce': 'http://t', 'info': info})

            with self.assertRaises(TorrentError):
                Torrent.from_bytes(contents)

    def test_rejects_missing_fields(self):
        for metadata in ({'info': self.info}, {'announce': 'http://t'}, {'announce': 'http://t', 'info': [1]}):
            with self.assertRaises(TorrentError):
                Torrent.from_bytes(bcoding.bencode(metadata))

    def test_generate_peer_id(self):
        peer_id = generate_peer_id()

        self.assertEqual(len(peer_id), 20)
        self.assertTrue(peer_id.isalnum())
        self.assertNotEqual(peer_id, generate_peer_id())


if __name__ == '__main__':
    unittest.main()
