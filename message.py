import logging
from struct import pack, unpack

import bitstring

# String identifier of the protocol for BitTorrent V1
HANDSHAKE_PSTR_V1 = b"BitTorrent protocol"
HANDSHAKE_PSTR_LEN = len(HANDSHAKE_PSTR_V1)
HANDSHAKE_LENGTH = 49 + HANDSHAKE_PSTR_LEN
LENGTH_PREFIX = 4


class WrongMessageException(Exception):
    """
    Custom exception class to indicate an error with the message.
    """
    pass


class Message:
    """
    Base class for BitTorrent messages.

    ``to_bytes`` returns the full frame, length prefix included.
    ``from_payload`` receives the bytes that follow the message id.
    """
    message_id = None

    def to_bytes(self):
        raise NotImplementedError()

    @classmethod
    def from_payload(cls, payload):
        raise NotImplementedError()


"""
Handshake message
"""


class Handshake(Message):
    """
        HANDSHAKE = <pstrlen><pstr><reserved><info_hash><peer_id>
            - pstrlen: 19, length of pstr (1 byte)
            - pstr: b"BitTorrent protocol" (19 bytes)
            - reserved: extension bits, all zero here (8 bytes)
            - info_hash: torrent identifier (20 bytes)
            - peer_id: sender id (20 bytes)
    """
    total_length = HANDSHAKE_LENGTH

    def __init__(self, info_hash, peer_id):
        super(Handshake, self).__init__()

        if len(info_hash) != 20:
            raise ValueError("Info hash must be 20 bytes long")
        if len(peer_id) != 20:
            raise ValueError("Peer ID must be 20 bytes long")

        self.info_hash = info_hash
        self.peer_id = peer_id

    def to_bytes(self):
        reserved = b'\x00' * 8
        return pack(">B{}s8s20s20s".format(HANDSHAKE_PSTR_LEN),
                    HANDSHAKE_PSTR_LEN,
                    HANDSHAKE_PSTR_V1,
                    reserved,
                    self.info_hash,
                    self.peer_id)

    @classmethod
    def from_bytes(cls, payload):
        if len(payload) != cls.total_length:
            raise WrongMessageException("Handshake must be {} bytes, got {}".format(cls.total_length, len(payload)))

        pstrlen, pstr, reserved, info_hash, peer_id = unpack(
            ">B{}s8s20s20s".format(HANDSHAKE_PSTR_LEN), payload)

        if pstrlen != HANDSHAKE_PSTR_LEN or pstr != HANDSHAKE_PSTR_V1:
            raise WrongMessageException("Invalid string identifier of the protocol: {!r}".format(payload[:20]))

        return Handshake(info_hash, peer_id)


"""
Regular messages
"""


class KeepAlive(Message):
    """
    A bare zero length prefix.
    """
    payload_length = 0
    total_length = 4

    def to_bytes(self):
        return pack(">I", self.payload_length)


class _SignalMessage(Message):
    # messages that carry nothing but their id
    payload_length = 1
    total_length = 5

    def to_bytes(self):
        return pack(">IB", self.payload_length, self.message_id)

    @classmethod
    def from_payload(cls, payload):
        if payload:
            raise WrongMessageException("{} carries no payload, got {} bytes".format(cls.__name__, len(payload)))
        return cls()


class Choke(_SignalMessage):
    """
    The peer will drop our pending requests and ignore new ones.
    """
    message_id = 0


class UnChoke(_SignalMessage):
    """
    The peer accepts requests again.
    """
    message_id = 1


class Interested(_SignalMessage):
    message_id = 2


class Have(Message):
    """
        HAVE = <length=5><id=4><piece_index: u32>

    Sent by a peer after it completes a piece.
    """
    message_id = 4

    payload_length = 5
    total_length = 4 + payload_length

    def __init__(self, piece_index):
        super(Have, self).__init__()
        self.piece_index = piece_index

    def to_bytes(self):
        return pack(">IBI", self.payload_length, self.message_id, self.piece_index)

    @classmethod
    def from_payload(cls, payload):
        if len(payload) != 4:
            raise WrongMessageException("Not a Have message")

        piece_index, = unpack(">I", payload)
        return Have(piece_index)


class BitField(Message):
    """
        BITFIELD = <length=1+n><id=5><bitfield: n bytes>

    Bit i (most significant bit first) is set when the sender has piece i;
    the spare bits of the last byte are zero.
    """
    message_id = 5

    def __init__(self, bitfield):  # bitfield is a bitstring.BitArray
        super(BitField, self).__init__()
        self.bitfield = bitfield
        self.bitfield_as_bytes = bitfield.tobytes()
        self.bitfield_length = len(self.bitfield_as_bytes)

        self.payload_length = 1 + self.bitfield_length
        self.total_length = 4 + self.payload_length

    def to_bytes(self):
        return pack(">IB{}s".format(self.bitfield_length),
                    self.payload_length,
                    self.message_id,
                    self.bitfield_as_bytes)

    @classmethod
    def from_payload(cls, payload):
        return BitField(bitstring.BitArray(bytes(payload)))


class Request(Message):
    """
        REQUEST = <length=13><id=6><piece_index: u32><block_offset: u32><block_length: u32>
    """
    message_id = 6

    payload_length = 13
    total_length = 4 + payload_length

    def __init__(self, piece_index, block_offset, block_length):
        super(Request, self).__init__()

        self.piece_index = piece_index
        self.block_offset = block_offset
        self.block_length = block_length

    def to_bytes(self):
        return pack(">IBIII",
                    self.payload_length,
                    self.message_id,
                    self.piece_index,
                    self.block_offset,
                    self.block_length)

    @classmethod
    def from_payload(cls, payload):
        if len(payload) != 12:
            raise WrongMessageException("Not a Request message")

        return cls(*unpack(">III", payload))


class Piece(Message):
    """
        PIECE = <length=9+n><id=7><piece_index: u32><block_offset: u32><block: n bytes>
    """
    message_id = 7

    def __init__(self, piece_index, block_offset, block):
        super(Piece, self).__init__()

        self.piece_index = piece_index
        self.block_offset = block_offset
        self.block = block
        self.block_length = len(block)

        self.payload_length = 9 + self.block_length
        self.total_length = 4 + self.payload_length

    def to_bytes(self):
        return pack(">IBII{}s".format(self.block_length),
                    self.payload_length,
                    self.message_id,
                    self.piece_index,
                    self.block_offset,
                    self.block)

    @classmethod
    def from_payload(cls, payload):
        if len(payload) < 8:
            raise WrongMessageException("Piece message too short: {} bytes".format(len(payload)))

        piece_index, block_offset = unpack(">II", payload[:8])
        return Piece(piece_index, block_offset, bytes(payload[8:]))


class Cancel(Request):
    """
    Withdraws an earlier REQUEST; same layout with id 8.
    """
    message_id = 8


MESSAGE_TYPES = {
    0: Choke,
    1: UnChoke,
    2: Interested,
    4: Have,
    5: BitField,
    6: Request,
    7: Piece,
    8: Cancel,
}


def parse_message(message_id, payload):
    if message_id not in MESSAGE_TYPES:
        raise WrongMessageException("Wrong message id {}".format(message_id))

    return MESSAGE_TYPES[message_id].from_payload(payload)


def split_frame(buffer):
    """
    Split the first complete length-prefixed frame off the front of ``buffer``.

    Args:
        buffer (bytes | bytearray): Bytes received so far.

    Returns:
        tuple or None: ``(message_id, payload, consumed)``, with ``message_id``
        None for a keep-alive, or None while the frame is still incomplete.
    """
    if len(buffer) < LENGTH_PREFIX:
        return None

    length, = unpack(">I", buffer[:LENGTH_PREFIX])
    if length == 0:
        logging.debug("keep-alive")
        return None, b"", LENGTH_PREFIX

    total_length = LENGTH_PREFIX + length
    if len(buffer) < total_length:
        return None

    return buffer[LENGTH_PREFIX], bytes(buffer[LENGTH_PREFIX + 1:total_length]), total_length
