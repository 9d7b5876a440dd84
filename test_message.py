import unittest
from struct import pack

import bitstring

import message
from message import (BitField, Cancel, Choke, Handshake, Have, Interested, KeepAlive, Piece, Request, UnChoke,
                     WrongMessageException)

INFO_HASH = bytes(range(20))
PEER_ID = b"-TD0001-abcdefghijkl"


class HandshakeTestCase(unittest.TestCase):
    def test_to_bytes(self):
        data = Handshake(INFO_HASH, PEER_ID).to_bytes()

        self.assertEqual(len(data), message.HANDSHAKE_LENGTH)
        self.assertEqual(data[:20], b"\x13BitTorrent protocol")
        self.assertEqual(data[20:28], b"\x00" * 8)
        self.assertEqual(data[28:48], INFO_HASH)
        self.assertEqual(data[48:68], PEER_ID)

    def test_from_bytes(self):
        handshake = Handshake.from_bytes(Handshake(INFO_HASH, PEER_ID).to_bytes())

        self.assertEqual(handshake.info_hash, INFO_HASH)
        self.assertEqual(handshake.peer_id, PEER_ID)

    def test_from_bytes_rejects_other_protocols(self):
        data = b"\x13BitTorrent protocoX" + b"\x00" * 48

        with self.assertRaises(WrongMessageException):
            Handshake.from_bytes(data)

        with self.assertRaises(WrongMessageException):
            Handshake.from_bytes(data[:40])

    def test_validates_lengths(self):
        with self.assertRaises(ValueError):
            Handshake(b"short", PEER_ID)
        with self.assertRaises(ValueError):
            Handshake(INFO_HASH, b"short")


class MessageTestCase(unittest.TestCase):
    def test_signal_messages(self):
        self.assertEqual(KeepAlive().to_bytes(), b"\x00\x00\x00\x00")
        self.assertEqual(Interested().to_bytes(), b"\x00\x00\x00\x01\x02")
        self.assertEqual(UnChoke().to_bytes(), b"\x00\x00\x00\x01\x01")

        with self.assertRaises(WrongMessageException):
            UnChoke.from_payload(b"\x00")

    def test_request(self):
        data = Request(1, 16384, 100).to_bytes()

        self.assertEqual(data, pack(">IBIII", 13, 6, 1, 16384, 100))

        request = message.parse_message(data[4], data[5:])
        self.assertIsInstance(request, Request)
        self.assertEqual((request.piece_index, request.block_offset, request.block_length), (1, 16384, 100))

    def test_piece(self):
        data = Piece(3, 32, b"block").to_bytes()

        self.assertEqual(data[:5], pack(">IB", 9 + 5, 7))

        piece = Piece.from_payload(data[5:])
        self.assertEqual(piece.piece_index, 3)
        self.assertEqual(piece.block_offset, 32)
        self.assertEqual(piece.block, b"block")
        self.assertEqual(piece.block_length, 5)

        with self.assertRaises(WrongMessageException):
            Piece.from_payload(b"\x00\x00")

    def test_bitfield(self):
        bit_field = BitField.from_payload(b"\xa0").bitfield

        self.assertIsInstance(bit_field, bitstring.BitArray)
        self.assertTrue(bit_field[0])
        self.assertFalse(bit_field[1])
        self.assertTrue(bit_field[2])

        data = BitField(bit_field).to_bytes()
        self.assertEqual(data, b"\x00\x00\x00\x02\x05\xa0")

    def test_have(self):
        have = message.parse_message(4, pack(">I", 9))

        self.assertIsInstance(have, Have)
        self.assertEqual(have.piece_index, 9)

    def test_cancel(self):
        data = Cancel(1, 16384, 100).to_bytes()

        self.assertEqual(data, pack(">IBIII", 13, 8, 1, 16384, 100))

        cancel = message.parse_message(data[4], data[5:])
        self.assertIsInstance(cancel, Cancel)
        self.assertEqual((cancel.piece_index, cancel.block_offset, cancel.block_length), (1, 16384, 100))

    def test_choke(self):
        self.assertEqual(Choke().to_bytes(), b"\x00\x00\x00\x01\x00")
        self.assertIsInstance(message.parse_message(0, b""), Choke)

    def test_bitfield_from_bytearray(self):
        bit_field = BitField.from_payload(bytearray(b"\x80\x01")).bitfield

        self.assertEqual(len(bit_field), 16)
        self.assertTrue(bit_field[0])
        self.assertTrue(bit_field[15])
        self.assertEqual(bit_field.count(1), 2)

    def test_unknown_message(self):
        with self.assertRaises(WrongMessageException):
            message.parse_message(20, b"")


class SplitFrameTestCase(unittest.TestCase):
    def test_incomplete_frames(self):
        data = Have(2).to_bytes()

        self.assertIsNone(message.split_frame(b""))
        self.assertIsNone(message.split_frame(data[:3]))
        self.assertIsNone(message.split_frame(data[:-1]))

    def test_keep_alive_and_frames(self):
        buffer = bytearray(KeepAlive().to_bytes() + Interested().to_bytes() + Have(2).to_bytes())

        self.assertEqual(message.split_frame(buffer), (None, b"", 4))
        del buffer[:4]
        self.assertEqual(message.split_frame(buffer), (2, b"", 5))
        del buffer[:5]
        self.assertEqual(message.split_frame(buffer), (4, pack(">I", 2), 9))

    def test_trailing_bytes_are_left(self):
        buffer = bytearray(Piece(0, 0, b"abc").to_bytes() + b"\x00\x00")

        message_id, payload, consumed = message.split_frame(buffer)

        self.assertEqual(message_id, 7)
        self.assertEqual(payload, pack(">II", 0, 0) + b"abc")
        self.assertEqual(len(buffer) - consumed, 2)


if __name__ == '__main__':
    unittest.main()
