"""
Bencode decoding and encoding.

Two decode paths share one recursive-descent decoder:

* ``decode(text)`` for ``str`` input returns ``(value, next_index)`` with
  byte strings decoded as ``str``.
* ``decode(data)`` for ``bytes``/``bytearray`` input returns a
  :class:`DecodeResult` whose ``byte_ranges`` maps every dictionary key found
  anywhere in the structure to the :class:`ByteRange` of its value's content
  in the original buffer. Callers slice the original bytes with it (the
  ``info`` dictionary for the info hash, the ``pieces`` blob, the tracker's
  compact ``peers``) instead of re-encoding decoded values.

Dictionary keys are accepted in any order and kept in encounter order.
"""
import re
import types
from typing import Any, Mapping, NamedTuple

_DIGITS = re.compile(r"[0-9]+")
_SIGNED_DIGITS = re.compile(r"-?[0-9]+")


class BencodeError(Exception):
    """
    Base class for errors raised by the bencode codec.
    """
    pass


class MalformedInputError(BencodeError, ValueError):
    """
    The buffer is not well-formed bencode at the given position.
    """
    pass


class InvalidKeyError(BencodeError):
    """
    A dictionary key did not decode to a byte string.
    """
    pass


class ByteRange(NamedTuple):
    """
    Inclusive ``(start, end)`` offsets of a value's content in the original
    buffer, without type markers or length prefixes. Empty content has
    ``end == start - 1``.
    """
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def slice(self, buffer):
        return buffer[self.start:self.end + 1]


class DecodeResult(NamedTuple):
    value: Any
    next_index: int
    byte_ranges: Mapping[str, ByteRange]


class _Decoder(object):
    def __init__(self, buffer):
        self.buffer = buffer
        self.is_text = isinstance(buffer, str)
        self.size = len(buffer)

    def char_at(self, index):
        if self.is_text:
            return self.buffer[index]
        return chr(self.buffer[index])

    def find(self, char, start):
        if self.is_text:
            return self.buffer.find(char, start)
        return self.buffer.find(char.encode("ascii"), start)

    def ascii_between(self, start, end):
        if self.is_text:
            return self.buffer[start:end]
        # latin-1 maps every byte, so stray bytes fail the digit patterns instead of raising here
        return bytes(self.buffer[start:end]).decode("latin-1")

    def decode_value(self, index):
        """
        Decode the value starting at ``index``.

        Returns:
            tuple: ``(value, next_index, content_range, byte_ranges)``
        """
        if index >= self.size:
            raise MalformedInputError("Unexpected end of input at index %d" % index)

        prefix = self.char_at(index)

        if prefix == "i":
            return self.decode_integer(index)
        if "0" <= prefix <= "9":
            return self.decode_string(index)
        if prefix == "l":
            return self.decode_list(index)
        if prefix == "d":
            return self.decode_dictionary(index)

        raise MalformedInputError("Unknown bencode type %r at index %d" % (prefix, index))

    def decode_integer(self, index):
        end = self.find("e", index + 1)
        if end < 0:
            raise MalformedInputError("Integer at index %d is missing its 'e' terminator" % index)

        digits = self.ascii_between(index + 1, end)
        if not _SIGNED_DIGITS.fullmatch(digits):
            raise MalformedInputError("Invalid integer %r at index %d" % (digits, index))

        return int(digits), end + 1, ByteRange(index + 1, end - 1), {}

    def decode_string(self, index):
        colon = self.find(":", index)
        if colon < 0:
            raise MalformedInputError("Byte string at index %d is missing its ':' separator" % index)

        prefix = self.ascii_between(index, colon)
        if not _DIGITS.fullmatch(prefix):
            raise MalformedInputError("Invalid byte string length %r at index %d" % (prefix, index))

        length = int(prefix)
        start = colon + 1
        end = start + length
        if end > self.size:
            raise MalformedInputError(
                "Byte string at index %d declares %d bytes but only %d remain" % (index, length, self.size - start))

        if self.is_text:
            value = self.buffer[start:end]
        else:
            value = bytes(self.buffer[start:end])

        return value, end, ByteRange(start, end - 1), {}

    def decode_list(self, index):
        start = index
        index += 1
        items = []
        byte_ranges = {}

        while True:
            if index >= self.size:
                raise MalformedInputError("List at index %d is missing its 'e' terminator" % start)
            if self.char_at(index) == "e":
                break

            value, index, _, nested_ranges = self.decode_value(index)
            items.append(value)
            byte_ranges.update(nested_ranges)

        return items, index + 1, ByteRange(start + 1, index - 1), byte_ranges

    def decode_dictionary(self, index):
        start = index
        index += 1
        entries = {}
        byte_ranges = {}

        while True:
            if index >= self.size:
                raise MalformedInputError("Dictionary at index %d is missing its 'e' terminator" % start)
            if self.char_at(index) == "e":
                break

            key_index = index
            key, index, _, _ = self.decode_value(index)
            key = self.key_name(key, key_index)

            if index >= self.size or self.char_at(index) == "e":
                raise MalformedInputError("Missing value for key %r at index %d" % (key, index))

            value, index, value_range, nested_ranges = self.decode_value(index)
            entries[key] = value

            # the key's own range first, so nested keys of the same name win
            byte_ranges[key] = value_range
            byte_ranges.update(nested_ranges)

        return entries, index + 1, ByteRange(start + 1, index - 1), byte_ranges

    def key_name(self, key, index):
        if isinstance(key, str):
            return key
        if isinstance(key, bytes):
            try:
                return key.decode("utf-8")
            except UnicodeDecodeError:
                raise InvalidKeyError("Dictionary key at index %d is not valid UTF-8: %r" % (index, key))

        raise InvalidKeyError("Dictionary key at index %d must be a byte string, got %s"
                              % (index, type(key).__name__))


def decode(buffer, start_index=0):
    """
    Decode one bencoded value starting at ``start_index``.

    Args:
        buffer (bytes | bytearray | memoryview | str): Bencoded data.
        start_index (int): Offset of the value's first byte.

    Returns:
        DecodeResult: for binary input, with the merged byte ranges.
        tuple: ``(value, next_index)`` for ``str`` input.

    Raises:
        MalformedInputError: If the data is not valid bencode.
        InvalidKeyError: If a dictionary key is not a byte string.
    """
    if isinstance(buffer, memoryview):
        buffer = buffer.tobytes()

    if not isinstance(buffer, (str, bytes, bytearray)):
        raise TypeError("Cannot decode object of type %s" % type(buffer).__name__)

    if len(buffer) == 0:
        raise MalformedInputError("Cannot decode an empty buffer")

    if start_index < 0 or start_index >= len(buffer):
        raise MalformedInputError("Start index %d is out of bounds for %d bytes" % (start_index, len(buffer)))

    decoder = _Decoder(buffer)
    value, next_index, _, byte_ranges = decoder.decode_value(start_index)

    if decoder.is_text:
        return value, next_index

    return DecodeResult(value, next_index, types.MappingProxyType(byte_ranges))


def decode_all(buffer):
    """
    Decode a buffer holding exactly one bencoded value.
    """
    result = decode(buffer, 0)
    next_index = result[1]

    if next_index != len(buffer):
        raise MalformedInputError("Trailing data after index %d" % next_index)

    return result


def encode(value) -> bytes:
    """
    Bencode a Python value. Dictionaries are written in their iteration order.
    """
    # bool is an int subclass but has no bencode form
    if isinstance(value, bool):
        raise TypeError("Cannot bencode a bool")

    if isinstance(value, int):
        return b"i%de" % value

    if isinstance(value, (bytes, bytearray)):
        return b"%d:%s" % (len(value), bytes(value))

    if isinstance(value, str):
        return encode(value.encode("utf-8"))

    if isinstance(value, (list, tuple)):
        return b"l" + b"".join(encode(item) for item in value) + b"e"

    if isinstance(value, dict):
        encoded = b"d"
        for key, item in value.items():
            if not isinstance(key, (str, bytes)):
                raise TypeError("Dictionary keys must be str or bytes, got %s" % type(key).__name__)
            encoded += encode(key) + encode(item)
        return encoded + b"e"

    raise TypeError("Cannot bencode value of type %s" % type(value).__name__)
