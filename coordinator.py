import concurrent.futures
import logging
import queue
import random
import threading
import time

from pubsub import pub

from peer import PeerSession, PeerSessionError, PeerSessionState
from piece import PieceState, PieceStateTable, build_piece_descriptors
from torrent import generate_peer_id
from tracker import TrackerClient

DEFAULT_PORT = 6881  # Default port for BitTorrent
DOWNLOAD_ALL_TIMEOUT = 300  # Seconds allowed for a whole download, and for waiting on an idle peer.
SHUTDOWN_GRACE_PERIOD = 10  # Seconds the worker pool gets to stop before pending work is cancelled.
RETRY_BACKOFF = (1, 3)  # Bounds in seconds of the random pause after a failed piece.
QUEUE_POLL_INTERVAL = 0.2  # Seconds a worker waits on an empty queue while pieces are still in flight.

PIECE_COMPLETED = 'DownloadCoordinator.PieceCompleted'
PIECE_FAILED = 'DownloadCoordinator.PieceFailed'


class DownloadError(Exception):
    pass


class NoPeersAvailableError(DownloadError):
    pass


class InvalidPieceIndexError(DownloadError, IndexError):
    pass


class PieceVerificationFailedError(DownloadError):
    pass


class DownloadTimedOutError(DownloadError):
    pass


def _log_piece_completed(piece_index, peer):
    logging.info("Downloaded piece %d from %s" % (piece_index, peer))


def _log_piece_failed(piece_index, peer, error):
    logging.error("Exception downloading piece %d from %s: %s" % (piece_index, peer, error))


# Subscribing here fixes the message data of both topics before anything is sent
pub.subscribe(_log_piece_completed, PIECE_COMPLETED)
pub.subscribe(_log_piece_failed, PIECE_FAILED)


class DownloadCoordinator(object):
    """
    Downloads a single-file torrent from every peer the tracker hands out.

    One worker per connected peer session pulls piece indexes from a shared
    FIFO queue. A worker claims a piece with an atomic compare-and-set on the
    piece state table before downloading it, so no piece is ever worked on by
    two workers at once. Failed pieces are put back in the queue and retried,
    possibly by another peer.

    Args:
        torrent: Metadata exposing ``announce``, ``length``, ``piece_length``,
            ``info_hash`` and ``piece_hashes``.
        sink: Piece writer with ``allocate(length)`` and ``write(offset, data)``.
        tracker: Tracker client; built from the torrent when omitted.
        session_factory: Callable ``(ip, port, peer_id, info_hash)`` returning a peer session.
        executor: Worker pool to reuse across calls; a pool sized to the number
            of peers is created (and shut down) per download when omitted.
    """

    def __init__(self, torrent, sink, tracker=None, session_factory=PeerSession, peer_id=None, executor=None,
                 port=DEFAULT_PORT, download_timeout=DOWNLOAD_ALL_TIMEOUT,
                 shutdown_grace_period=SHUTDOWN_GRACE_PERIOD, retry_backoff=RETRY_BACKOFF):
        if torrent is None or sink is None or session_factory is None:
            raise ValueError("Torrent, sink and session factory cannot be None")

        self.peer_id = peer_id if peer_id is not None else generate_peer_id()
        self.info_hash = torrent.info_hash
        self.file_length = torrent.length
        self.piece_length = torrent.piece_length
        self.pieces = build_piece_descriptors(torrent.length, torrent.piece_length, torrent.piece_hashes)

        self.sink = sink
        self.session_factory = session_factory
        self.executor = executor
        self.download_timeout = download_timeout
        self.shutdown_grace_period = shutdown_grace_period
        self.retry_backoff = retry_backoff

        if tracker is None:
            tracker = TrackerClient(torrent.announce, port, torrent.length, torrent.info_hash, self.peer_id)
        self.tracker = tracker

        self.peer_sessions = []
        self.piece_states = PieceStateTable()
        self.piece_downloaders = {}  # Diagnostic: piece index -> session working on it
        self.piece_queue = queue.Queue()

        self._downloaders_lock = threading.Lock()
        self._sessions_available = threading.Condition()
        self._busy_sessions = set()
        self._stop = threading.Event()

    @property
    def num_pieces(self):
        return len(self.pieces)

    def find_remote_peers(self):
        """
        Ask the tracker for peers and build one unconnected session per peer.
        """
        response = self.tracker.request_tracker()
        sessions = []

        for tracker_peer in response.peers:
            try:
                sessions.append(self.session_factory(tracker_peer.ip, tracker_peer.port, self.peer_id, self.info_hash))
            except ValueError as e:
                logging.warning("Skipping peer %s: %s" % (tracker_peer, e))

        logging.info("Tracker returned %d peer(s)" % len(sessions))
        return sessions

    def connect_peers(self):
        """
        Handshake with every peer the tracker knows; peers that fail are logged and dropped.
        """
        for session in self.find_remote_peers():
            try:
                session.handshake()
            except PeerSessionError as e:
                logging.error("Failed to connect to peer %s: %s" % (session.address, e))
                continue

            self.peer_sessions.append(session)

        logging.info("Connected to %d peer(s)" % len(self.peer_sessions))
        return self.peer_sessions

    def download_all(self):
        """
        Download every piece and write it through the sink.

        Raises:
            NoPeersAvailableError: If no peer completes the handshake, or every
                peer disconnects before the download is complete.
            DownloadTimedOutError: If the download takes longer than ``download_timeout``.
        """
        if not self.peer_sessions:
            self.connect_peers()
        if not self.peer_sessions:
            raise NoPeersAvailableError("No peers available for download")

        self._init_piece_queue()
        self.sink.allocate(self.file_length)
        self._stop.clear()

        executor = self.executor
        owns_executor = executor is None
        if owns_executor:
            executor = concurrent.futures.ThreadPoolExecutor(max_workers=len(self.peer_sessions),
                                                             thread_name_prefix='peer-worker')

        futures = []
        try:
            for session in self.peer_sessions:
                futures.append(executor.submit(self._download_pieces_for_peer, session))

            done, not_done = concurrent.futures.wait(futures, timeout=self.download_timeout)
            if not_done:
                self._stop.set()
                # Unblocks workers stuck in socket reads
                for session in self.peer_sessions:
                    session.close()
                raise DownloadTimedOutError("Download timeout - %d/%d pieces downloaded within %d seconds" % (
                    self.piece_states.count(PieceState.DONE), self.num_pieces, self.download_timeout))

            for future in done:
                future.result()

        finally:
            self._stop.set()
            if owns_executor:
                self._shutdown_executor(executor, futures)

        if not self.piece_states.all_in(PieceState.DONE):
            raise NoPeersAvailableError("All peers disconnected with %d piece(s) remaining" % (
                self.num_pieces - self.piece_states.count(PieceState.DONE)))

        logging.info("File downloaded successfully: %d pieces" % self.num_pieces)

    def download_piece(self, piece_index):
        """
        Download a single piece from the first idle peer that has it, without retrying.

        Waits for a peer to become idle when all of them are busy.

        Returns:
            bytes or None: The verified piece, or None when no peer could be connected.

        Raises:
            InvalidPieceIndexError: If the index is outside the torrent.
            PieceVerificationFailedError: If the download or the hash check fails.
            NoPeersAvailableError: If no open connection has the piece.
        """
        if not 0 <= piece_index < self.num_pieces:
            raise InvalidPieceIndexError("Invalid piece index: %d (torrent has %d pieces)" % (
                piece_index, self.num_pieces))

        if not self.peer_sessions:
            self.connect_peers()
            if not self.peer_sessions:
                return None

        descriptor = self.pieces[piece_index]
        session = self._acquire_available_session(piece_index)

        try:
            self._set_downloader(piece_index, session)
            try:
                data = session.download_piece(piece_index, self.piece_length, descriptor.sha1, self.file_length)
            except PeerSessionError as e:
                raise PieceVerificationFailedError("Piece %d from %s failed: %s" % (
                    piece_index, session.address, e)) from e

            self._publish(PIECE_COMPLETED, piece_index=piece_index, peer=session.address)
            return data

        finally:
            self._clear_downloader(piece_index)
            self._release_session(session)

    def close_all_connections(self):
        for session in self.peer_sessions:
            try:
                session.close()
            except OSError as e:
                logging.error("Failed to close connection to peer %s: %s" % (session.address, e))

        with self._downloaders_lock:
            self.piece_downloaders.clear()
        self.piece_states.clear()
        self.peer_sessions = []

    def _init_piece_queue(self):
        self.piece_states.reset(self.num_pieces)

        # Drop leftovers of a previous call
        self.piece_queue = queue.Queue()
        for i in range(self.num_pieces):
            self.piece_queue.put(i)

    def _download_pieces_for_peer(self, session):
        self._mark_busy(session)
        skipped = 0
        try:
            while not self._stop.is_set() and session.state != PeerSessionState.CLOSED:
                if self.piece_states.all_in(PieceState.DONE):
                    break

                try:
                    piece_index = self.piece_queue.get(timeout=QUEUE_POLL_INTERVAL)
                except queue.Empty:
                    continue

                if not session.has_piece(piece_index):
                    # Leave it to a peer that advertised it
                    self.piece_queue.put(piece_index)
                    skipped += 1
                    if skipped >= self.piece_queue.qsize():
                        skipped = 0
                        self._stop.wait(QUEUE_POLL_INTERVAL)
                    continue
                skipped = 0

                if not self.piece_states.compare_and_set(piece_index, PieceState.NOT_STARTED,
                                                         PieceState.IN_PROGRESS):
                    logging.debug("Piece %d already claimed, skipping" % piece_index)
                    continue

                try:
                    self._download_single_piece(session, piece_index)
                except Exception as e:
                    self._handle_download_error(session, piece_index, e)
                    # Wait a bit before retrying to avoid overwhelming the peer
                    self._stop.wait(random.uniform(*self.retry_backoff))
                    continue

                self._publish(PIECE_COMPLETED, piece_index=piece_index, peer=session.address)
        finally:
            self._release_session(session)

    def _download_single_piece(self, session, piece_index):
        descriptor = self.pieces[piece_index]
        self._set_downloader(piece_index, session)
        logging.info("Starting download for piece %d from peer %s" % (piece_index, session.address))

        data = session.download_piece(piece_index, self.piece_length, descriptor.sha1, self.file_length)
        self.sink.write(piece_index * self.piece_length, data)

        self.piece_states.set(piece_index, PieceState.DONE)
        self._clear_downloader(piece_index)

    def _handle_download_error(self, session, piece_index, error):
        self._clear_downloader(piece_index)
        self.piece_states.set(piece_index, PieceState.NOT_STARTED)
        self.piece_queue.put(piece_index)
        self._publish(PIECE_FAILED, piece_index=piece_index, peer=session.address, error=error)

    def _publish(self, topic, **data):
        try:
            pub.sendMessage(topic, **data)
        except Exception:
            logging.exception("Listener of %s failed for piece %d" % (topic, data['piece_index']))

    def _set_downloader(self, piece_index, session):
        with self._downloaders_lock:
            self.piece_downloaders[piece_index] = session

    def _clear_downloader(self, piece_index):
        with self._downloaders_lock:
            self.piece_downloaders.pop(piece_index, None)

    def _acquire_available_session(self, piece_index):
        deadline = time.monotonic() + self.download_timeout

        with self._sessions_available:
            while True:
                for session in self.peer_sessions:
                    if (session.is_available and session not in self._busy_sessions
                            and session.has_piece(piece_index)):
                        self._busy_sessions.add(session)
                        return session

                open_sessions = [s for s in self.peer_sessions if s.state != PeerSessionState.CLOSED]
                if not open_sessions:
                    raise NoPeersAvailableError("All peer connections are closed")
                if not any(s.has_piece(piece_index) for s in open_sessions):
                    raise NoPeersAvailableError("No connected peer has piece %d" % piece_index)

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise DownloadTimedOutError("No peer became idle within %d seconds" % self.download_timeout)

                self._sessions_available.wait(remaining)

    def _mark_busy(self, session):
        with self._sessions_available:
            self._busy_sessions.add(session)

    def _release_session(self, session):
        with self._sessions_available:
            self._busy_sessions.discard(session)
            self._sessions_available.notify_all()

    def _shutdown_executor(self, executor, futures):
        executor.shutdown(wait=False)

        _, not_done = concurrent.futures.wait(futures, timeout=self.shutdown_grace_period)
        if not_done:
            executor.shutdown(wait=False, cancel_futures=True)
            logging.error("Worker pool did not terminate cleanly, %d worker(s) still running" % len(not_done))
