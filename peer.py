import hashlib
import logging
import socket
import threading
import time
from enum import Enum

from message import (HANDSHAKE_LENGTH, MESSAGE_TYPES, BitField, Cancel, Choke, Handshake, Have, Interested,
                     KeepAlive, Piece, Request, UnChoke, WrongMessageException, parse_message, split_frame)
from piece import effective_piece_length, iter_blocks

CONNECT_TIMEOUT = 5  # Seconds allowed for the TCP connect.
HANDSHAKE_TIMEOUT = 10  # Seconds to wait for each of BITFIELD and UNCHOKE.
DOWNLOAD_TIMEOUT = 30  # Seconds without a usable block before a piece download is abandoned.
RECV_SIZE = 4096


class PeerSessionState(Enum):
    UNINITIALIZED = 0
    HANDSHAKED = 1
    INTERESTED = 2
    DOWNLOADING = 3
    IDLE = 4
    CLOSED = 5


# States in which a session can take a new piece request
AVAILABLE_STATES = frozenset([PeerSessionState.HANDSHAKED, PeerSessionState.INTERESTED, PeerSessionState.IDLE])


class PeerSessionError(Exception):
    pass


class ProtocolMismatchError(PeerSessionError):
    pass


class InfoHashMismatchError(PeerSessionError):
    pass


class NoResponseError(PeerSessionError):
    pass


class NegotiationTimeoutError(PeerSessionError):
    pass


class DownloadTimeoutError(PeerSessionError):
    pass


class UnexpectedPieceError(PeerSessionError):
    pass


class BlockOverrunError(PeerSessionError):
    pass


class HashMismatchError(PeerSessionError):
    pass


class MalformedMessageError(PeerSessionError):
    pass


class ConnectionClosedError(PeerSessionError):
    pass


class PeerSession(object):
    """
    One connection to a remote peer, driven through the handshake, the
    BITFIELD / INTERESTED / UNCHOKE negotiation and pipelined block downloads.

    Received bytes go through ``read_buffer``, so a frame cut short by a
    timeout is completed by the next read instead of being lost.

    A session serves one piece at a time and is meant to be used by a single
    worker thread.
    """

    def __init__(self, ip, port, peer_id, info_hash, sock=None, connect_timeout=CONNECT_TIMEOUT,
                 handshake_timeout=HANDSHAKE_TIMEOUT, download_timeout=DOWNLOAD_TIMEOUT):
        if not ip:
            raise ValueError("IP address cannot be empty")
        if not 0 < port <= 65535:
            raise ValueError("Port must be between 1 and 65535, got {}".format(port))
        if peer_id is None or len(peer_id) != 20:
            raise ValueError("Peer ID must be 20 bytes long")
        if info_hash is None or len(info_hash) != 20:
            raise ValueError("Info hash must be 20 bytes long")

        self.ip = ip  # IP address of the peer
        self.port = port  # Port number of the peer
        self.peer_id = peer_id  # Our own id, sent in the handshake
        self.info_hash = info_hash
        self.socket = sock  # Injected sockets skip the connect step
        self.read_buffer = bytearray()  # Received bytes not yet parsed into messages

        self.connect_timeout = connect_timeout
        self.handshake_timeout = handshake_timeout
        self.download_timeout = download_timeout

        self.state = PeerSessionState.UNINITIALIZED
        self.remote_peer_id = None  # Id the peer answered with
        self.bit_field = None  # bitstring.BitArray advertised by the peer
        self.peer_choking = True

        # In-flight piece bookkeeping
        self.current_piece_index = None
        self.current_piece_length = 0
        self.bytes_received = 0

        self._close_lock = threading.Lock()

    @property
    def address(self):
        return "%s:%d" % (self.ip, self.port)

    @property
    def is_available(self):
        return self.state in AVAILABLE_STATES

    def has_piece(self, index):
        # Without a bitfield we can't tell, so assume the peer has it
        if self.bit_field is None:
            return True
        return index < len(self.bit_field) and bool(self.bit_field[index])

    def handshake(self):
        """
        Connect if needed, exchange the 68-byte handshake and validate the answer.

        The connection is closed before any error propagates.

        Returns:
            bytes: The peer's raw handshake.

        Raises:
            NoResponseError: If the connection fails, or the peer closes the stream or never answers.
            ProtocolMismatchError: If the peer does not speak BitTorrent v1.
            InfoHashMismatchError: If the peer serves another torrent.
        """
        if self.state == PeerSessionState.CLOSED:
            raise PeerSessionError("Session with %s is closed" % self.address)

        try:
            if self.socket is None:
                try:
                    self.socket = socket.create_connection((self.ip, self.port), timeout=self.connect_timeout)
                except OSError as e:
                    raise NoResponseError("Failed to connect to peer %s: %s" % (self.address, e)) from e
                logging.debug("Connected to peer ip: {} - port: {}".format(self.ip, self.port))

            self.socket.settimeout(self.handshake_timeout)
            self._send(Handshake(self.info_hash, self.peer_id).to_bytes())

            deadline = time.monotonic() + self.handshake_timeout
            try:
                response = self._take_bytes(HANDSHAKE_LENGTH, deadline)
            except (ConnectionClosedError, socket.timeout) as e:
                raise NoResponseError("No response from peer %s: %s" % (self.address, e)) from e

            try:
                handshake = Handshake.from_bytes(response)
            except WrongMessageException as e:
                raise ProtocolMismatchError("Invalid response from peer %s: %s" % (self.address, e)) from e

            if handshake.info_hash != self.info_hash:
                raise InfoHashMismatchError("Info hash mismatch from %s: expected %s, got %s" % (
                    self.address, self.info_hash.hex(), handshake.info_hash.hex()))

        except PeerSessionError:
            self.close()
            raise

        self.remote_peer_id = handshake.peer_id
        self.state = PeerSessionState.HANDSHAKED
        logging.info("Handshake with %s done, remote peer id %s" % (self.address, self.remote_peer_id.hex()))

        return response

    def establish_interested(self):
        """
        Wait for the peer's BITFIELD, send INTERESTED and wait for UNCHOKE.

        Each wait gets its own ``handshake_timeout``.

        Raises:
            NegotiationTimeoutError: If either message does not arrive in time.
        """
        if self.state == PeerSessionState.UNINITIALIZED:
            self.handshake()

        self._wait_for_message(BitField, "BITFIELD")
        self._send(Interested().to_bytes())
        self._wait_for_message(UnChoke, "UNCHOKE")

        self.state = PeerSessionState.INTERESTED
        return True

    def download_piece(self, piece_index, piece_length, expected_hash, file_length):
        """
        Download and verify one piece.

        Args:
            piece_index (int): Zero based index of the piece.
            piece_length (int): Nominal piece length from the torrent.
            expected_hash (bytes): SHA-1 digest the piece must match.
            file_length (int): Total file length, used to size the last piece.

        Returns:
            bytes: The verified piece.

        Raises:
            DownloadTimeoutError: If no usable block arrives for ``download_timeout`` seconds.
            UnexpectedPieceError: If the peer sends a block of another piece or a bad offset.
            BlockOverrunError: If a block runs past the end of the piece.
            HashMismatchError: If the assembled piece fails verification.
            ConnectionClosedError: If the connection drops; the session is then CLOSED.
        """
        if self.state == PeerSessionState.CLOSED:
            raise PeerSessionError("Session with %s is closed" % self.address)

        if self.state in (PeerSessionState.UNINITIALIZED, PeerSessionState.HANDSHAKED):
            self.establish_interested()

        length = effective_piece_length(piece_index, piece_length, file_length)

        self.state = PeerSessionState.DOWNLOADING
        self.current_piece_index = piece_index
        self.current_piece_length = length
        self.bytes_received = 0

        try:
            return self._download_blocks(piece_index, length, expected_hash)
        finally:
            self.current_piece_index = None
            self.current_piece_length = 0
            self.bytes_received = 0
            if self.state == PeerSessionState.DOWNLOADING:
                self.state = PeerSessionState.IDLE

    def _download_blocks(self, piece_index, length, expected_hash):
        pending = dict(iter_blocks(length))  # block offset -> block length

        # Pipeline every request up front
        self._request_blocks(piece_index, pending)

        try:
            piece_buf = self._receive_blocks(piece_index, length, pending)
        except PeerSessionError:
            if pending and self.state != PeerSessionState.CLOSED:
                self._cancel_blocks(piece_index, pending)
            raise

        actual_hash = hashlib.sha1(piece_buf).digest()
        if actual_hash != expected_hash:
            raise HashMismatchError("Piece %d hash mismatch from %s: expected %s, got %s" % (
                piece_index, self.address, expected_hash.hex(), actual_hash.hex()))

        return bytes(piece_buf)

    def _receive_blocks(self, piece_index, length, pending):
        piece_buf = bytearray(length)
        deadline = time.monotonic() + self.download_timeout
        choked = False

        while self.bytes_received < length:
            try:
                message = self._read_message(deadline)
            except socket.timeout as e:
                raise DownloadTimeoutError("Timed out while downloading piece %d from %s (%d/%d bytes)" % (
                    piece_index, self.address, self.bytes_received, length)) from e

            if isinstance(message, Choke):
                choked = True
                continue

            if isinstance(message, UnChoke):
                # A choke drops every outstanding request
                if choked:
                    self._request_blocks(piece_index, pending)
                choked = False
                continue

            if not isinstance(message, Piece):
                continue

            if message.piece_index != piece_index or not 0 <= message.block_offset < length:
                raise UnexpectedPieceError("Invalid piece index or offset from %s: expected piece %d within %d bytes, "
                                           "got piece %d at offset %d" % (self.address, piece_index, length,
                                                                          message.piece_index, message.block_offset))

            block_end = message.block_offset + message.block_length
            if block_end > length:
                raise BlockOverrunError("Block at offset %d with %d bytes exceeds piece %d of %d bytes from %s" % (
                    message.block_offset, message.block_length, piece_index, length, self.address))

            if message.block_length == 0:
                continue

            piece_buf[message.block_offset:block_end] = message.block
            pending.pop(message.block_offset, None)
            self.bytes_received += message.block_length

            # Reset timeout on successful block
            deadline = time.monotonic() + self.download_timeout

        return piece_buf

    def _request_blocks(self, piece_index, blocks):
        for block_offset, block_length in sorted(blocks.items()):
            self._send(Request(piece_index, block_offset, block_length).to_bytes())

    def _cancel_blocks(self, piece_index, blocks):
        try:
            for block_offset, block_length in sorted(blocks.items()):
                self._send(Cancel(piece_index, block_offset, block_length).to_bytes())
        except ConnectionClosedError as e:
            logging.debug("Could not cancel requests for piece %d: %s" % (piece_index, e))

    def _wait_for_message(self, message_class, name):
        deadline = time.monotonic() + self.handshake_timeout

        while True:
            try:
                message = self._read_message(deadline)
            except socket.timeout as e:
                raise NegotiationTimeoutError("Timeout waiting for %s message from %s" % (name, self.address)) from e

            if isinstance(message, message_class):
                return message

            logging.debug("Discarding %s from %s while waiting for %s" % (
                type(message).__name__, self.address, name))

    def _read_message(self, deadline):
        while True:
            frame = split_frame(self.read_buffer)
            if frame is None:
                self._fill_buffer(deadline)
                continue

            message_id, payload, consumed = frame
            del self.read_buffer[:consumed]

            if message_id is None:
                return KeepAlive()

            if message_id not in MESSAGE_TYPES:
                logging.debug("Ignoring message %d from %s" % (message_id, self.address))
                continue

            try:
                message = parse_message(message_id, payload)
            except WrongMessageException as e:
                raise MalformedMessageError("Malformed message %d from %s: %s" % (message_id, self.address, e)) from e

            self._handle_message(message)
            return message

    def _handle_message(self, message):
        if isinstance(message, BitField):
            self.bit_field = message.bitfield
            logging.debug('handle_bitfield - %s - %d pieces advertised' % (self.ip, self.bit_field.count(1)))
        elif isinstance(message, Have):
            logging.debug('handle_have - ip: %s - piece: %s' % (self.ip, message.piece_index))
            if self.bit_field is not None and message.piece_index < len(self.bit_field):
                self.bit_field[message.piece_index] = True
        elif isinstance(message, Choke):
            logging.debug('handle_choke - %s' % self.ip)
            self.peer_choking = True
        elif isinstance(message, UnChoke):
            logging.debug('handle_unchoke - %s' % self.ip)
            self.peer_choking = False

    def _take_bytes(self, nbytes, deadline):
        while len(self.read_buffer) < nbytes:
            self._fill_buffer(deadline)

        data = bytes(self.read_buffer[:nbytes])
        del self.read_buffer[:nbytes]
        return data

    def _fill_buffer(self, deadline):
        sock = self.socket
        if sock is None:
            raise ConnectionClosedError("Session with %s is closed" % self.address)

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise socket.timeout("timed out")

        try:
            sock.settimeout(remaining)
            buff = sock.recv(RECV_SIZE)
        except socket.timeout:
            raise
        except OSError as e:
            self.close()
            raise ConnectionClosedError("Connection to peer %s failed: %s" % (self.address, e)) from e

        if not buff:
            self.close()
            raise ConnectionClosedError("Connection closed by %s with %d unparsed bytes" % (
                self.address, len(self.read_buffer)))

        self.read_buffer += buff

    def _send(self, data):
        sock = self.socket
        if sock is None:
            raise ConnectionClosedError("Session with %s is closed" % self.address)

        try:
            sock.sendall(data)
        except OSError as e:
            self.close()
            raise ConnectionClosedError("Failed to send to peer %s: %s" % (self.address, e)) from e

    def close(self):
        """
        Close the connection; closing twice is a no-op.
        """
        with self._close_lock:
            if self.state == PeerSessionState.CLOSED:
                return
            self.state = PeerSessionState.CLOSED
            sock, self.socket = self.socket, None

        if sock is None:
            return

        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logging.debug("Shutdown of %s failed: %s" % (self.address, e))
        finally:
            sock.close()

        logging.debug("Closed connection to %s" % self.address)

    def __repr__(self):
        return "PeerSession(%s, %s)" % (self.address, self.state.name)
