import logging
import socket
import struct
from typing import NamedTuple

import requests

import codec

TRACKER_TIMEOUT = 20  # Seconds to wait for the tracker's answer.
PEERS_KEY = 'peers'
INTERVAL_KEY = 'interval'

# Bytes that go into the query string as-is; everything else becomes %XX.
UNRESERVED_BYTES = frozenset(b"ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_.~")


class TrackerError(Exception):
    pass


class TrackerCommunicationError(TrackerError):
    """
    The tracker could not be reached, answered with a non-200 status, or sent
    a body that is not bencode.
    """

    def __init__(self, message, status_code=None, body=None):
        super(TrackerCommunicationError, self).__init__(message)
        self.status_code = status_code
        self.body = body


class MalformedTrackerResponseError(TrackerError):
    pass


class TrackerPeer(NamedTuple):
    ip: str
    port: int

    def __str__(self):
        return "%s:%d" % (self.ip, self.port)


class TrackerResponse(object):
    def __init__(self, interval, peers_blob):
        self.interval = interval  # Seconds the tracker wants between announces.
        self.peers_blob = peers_blob  # Raw compact peer list.

    @property
    def peers(self):
        return parse_compact_peers(self.peers_blob)


def url_encode_bytes(raw):
    """
    Percent-encode raw bytes for a tracker query string.

    Unreserved ASCII bytes are kept, every other byte becomes ``%XX`` in
    uppercase hex. No text decoding happens, so any 20-byte hash survives.
    """
    if not raw:
        raise ValueError("Cannot encode an empty value")

    return ''.join(chr(b) if b in UNRESERVED_BYTES else '%{:02X}'.format(b) for b in raw)


def parse_compact_peers(blob):
    """
    Handles bytes form of list of peers:
        - Size of each peer: 6 bytes
        - The first 4 bytes are the IPv4 address
        - Next 2 bytes are the big-endian port number
    """
    if len(blob) % 6 != 0:
        raise MalformedTrackerResponseError(
            "Compact peer list length %d is not a multiple of 6" % len(blob))

    peers = []
    for offset in range(0, len(blob), 6):
        ip = socket.inet_ntoa(blob[offset:offset + 4])
        port, = struct.unpack_from("!H", blob, offset + 4)
        peers.append(TrackerPeer(ip, port))

    return peers


class TrackerClient(object):
    def __init__(self, tracker_url, port, file_length, info_hash, peer_id, http=None, timeout=TRACKER_TIMEOUT):
        if not tracker_url:
            raise ValueError("Tracker URL cannot be empty")
        if info_hash is None or len(info_hash) != 20:
            raise ValueError("Info hash must be 20 bytes long")
        if peer_id is None or len(peer_id) != 20:
            raise ValueError("Peer ID must be 20 bytes long")
        if port <= 0:
            raise ValueError("Port must be a positive integer")
        if file_length <= 0:
            raise ValueError("File size must be a positive integer")

        self.tracker_url = tracker_url
        self.port = port
        self.file_length = file_length
        self.info_hash = info_hash
        self.peer_id = peer_id
        self.timeout = timeout
        self.http = http if http is not None else requests.Session()

        self.uploaded = 0
        self.downloaded = 0
        self.left = file_length
        self.compact = 1  # compact = 1 means peer list is in binary format

    def build_tracker_url(self):
        params = [
            ('info_hash', url_encode_bytes(self.info_hash)),
            ('peer_id', url_encode_bytes(self.peer_id)),
            ('port', self.port),
            ('uploaded', self.uploaded),
            ('downloaded', self.downloaded),
            ('left', self.left),
            ('compact', self.compact),
        ]
        query = '&'.join('%s=%s' % (name, value) for name, value in params)
        separator = '&' if '?' in self.tracker_url else '?'

        return self.tracker_url + separator + query

    def request_tracker(self):
        """
        Announce to the tracker and return its answer.

        Returns:
            TrackerResponse: The interval and the compact peer list.

        Raises:
            TrackerCommunicationError: If the tracker can't be reached, does not
                answer 200, or answers with something that is not bencode.
            MalformedTrackerResponseError: If 'interval' or 'peers' is missing.
        """
        url = self.build_tracker_url()
        logging.info("Requesting tracker: %s" % url)

        try:
            answer_tracker = self.http.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise TrackerCommunicationError("Failed to contact tracker %s: %s" % (self.tracker_url, e)) from e

        if answer_tracker.status_code != 200:
            raise TrackerCommunicationError(
                "Tracker returned non-200 response: %d" % answer_tracker.status_code,
                status_code=answer_tracker.status_code, body=answer_tracker.content)

        return self.parse_tracker_response(answer_tracker.content)

    def parse_tracker_response(self, body):
        try:
            decoded = codec.decode(body)
        except codec.BencodeError as e:
            raise TrackerCommunicationError(
                "Failed to decode tracker response: %s. Response: %r" % (e, body), status_code=200, body=body) from e

        response = decoded.value
        if not isinstance(response, dict):
            raise MalformedTrackerResponseError("Tracker response is not a dictionary: %r" % (response,))

        if 'failure reason' in response:
            logging.warning("Tracker failure reason: %r" % response['failure reason'])

        if PEERS_KEY not in response or INTERVAL_KEY not in response:
            raise MalformedTrackerResponseError(
                "Missing 'peers' or 'interval' in tracker response. Current Response: %r" % (response,))

        interval = response[INTERVAL_KEY]
        if not isinstance(interval, int):
            raise MalformedTrackerResponseError("Expected an integer for key: %s" % INTERVAL_KEY)

        peers = response[PEERS_KEY]
        if not isinstance(peers, bytes):
            raise MalformedTrackerResponseError("Expected a compact byte string for key: %s" % PEERS_KEY)

        logging.debug("Tracker interval %d, %d peer bytes" % (interval, len(peers)))

        return TrackerResponse(interval, peers)
