import json
import logging
import sys
import threading

from pubsub import pub

import codec
from coordinator import DEFAULT_PORT, PIECE_COMPLETED, PIECE_FAILED, DownloadCoordinator, DownloadError
from peer import PeerSession, PeerSessionError
from torrent import Torrent, TorrentError, generate_peer_id
from tracker import TrackerClient, TrackerError
from writer import FilePieceWriter

USAGE = """usage: tordl [-v] <command> [args]

commands:
  decode <bencoded value>
  info <file.torrent>
  peers <file.torrent>
  handshake <file.torrent> <ip:port>
  download_piece -o <output> <file.torrent> <piece index>
  download -o <output> <file.torrent>"""


class UsageError(Exception):
    pass


def _to_json(value):
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    raise TypeError("Cannot serialize %r" % type(value))


def _split_address(address):
    ip, sep, port = address.rpartition(':')
    if not sep or not ip or not port.isdigit():
        raise UsageError("Expected <ip>:<port>, got %r" % address)
    return ip, int(port)


def _pop_output(args):
    if '-o' not in args:
        raise UsageError("Missing -o <output>")

    position = args.index('-o')
    try:
        output = args[position + 1]
    except IndexError:
        raise UsageError("Missing value for -o")

    return output, args[:position] + args[position + 2:]


class Run(object):
    def __init__(self, args):
        self.args = args
        self.completed_pieces = 0
        self.number_of_pieces = 0
        self.last_log_line = ""
        self._progress_lock = threading.Lock()  # Listeners run on the worker threads

    def start(self):
        if not self.args:
            raise UsageError("No command provided")

        command, args = self.args[0], self.args[1:]
        handler = getattr(self, 'command_%s' % command, None)
        if handler is None:
            raise UsageError("Unknown command: %s" % command)

        handler(args)

    def command_decode(self, args):
        if len(args) != 1:
            raise UsageError("decode takes exactly one argument")

        value, _ = codec.decode(args[0])
        print(json.dumps(value, default=_to_json))

    def command_info(self, args):
        torrent = self._load_torrent(args, 1)

        print("Tracker URL: %s" % torrent.announce)
        print("Length: %d" % torrent.length)
        print("Info Hash: %s" % torrent.info_hash_hex)
        print("Piece Length: %d" % torrent.piece_length)
        print("Piece Hashes:")
        for piece_hash in torrent.piece_hashes:
            print(piece_hash.hex())

    def command_peers(self, args):
        torrent = self._load_torrent(args, 1)
        tracker = TrackerClient(torrent.announce, DEFAULT_PORT, torrent.length, torrent.info_hash, generate_peer_id())

        for peer in tracker.request_tracker().peers:
            print(peer)

    def command_handshake(self, args):
        torrent = self._load_torrent(args, 2)
        ip, port = _split_address(args[1])

        session = PeerSession(ip, port, generate_peer_id(), torrent.info_hash)
        try:
            session.handshake()
            print("Peer ID: %s" % session.remote_peer_id.hex())
        finally:
            session.close()

    def command_download_piece(self, args):
        output, args = _pop_output(args)
        torrent = self._load_torrent(args, 2)

        try:
            piece_index = int(args[1])
        except ValueError:
            raise UsageError("Piece index must be an integer, got %r" % args[1])

        coordinator = DownloadCoordinator(torrent, FilePieceWriter(output))
        try:
            data = coordinator.download_piece(piece_index)
        finally:
            coordinator.close_all_connections()

        if data is None:
            raise DownloadError("No peers available to download piece %d" % piece_index)

        with open(output, 'wb') as f:
            f.write(data)
        print("Piece %d downloaded to %s." % (piece_index, output))

    def command_download(self, args):
        output, args = _pop_output(args)
        torrent = self._load_torrent(args, 1)

        self.number_of_pieces = torrent.number_of_pieces
        pub.subscribe(self.display_progression, PIECE_COMPLETED)
        pub.subscribe(self.display_failure, PIECE_FAILED)

        coordinator = DownloadCoordinator(torrent, FilePieceWriter(output))
        try:
            coordinator.download_all()
        finally:
            coordinator.close_all_connections()
            pub.unsubscribe(self.display_progression, PIECE_COMPLETED)
            pub.unsubscribe(self.display_failure, PIECE_FAILED)

        print("Downloaded %s to %s." % (torrent.name, output))

    def display_progression(self, piece_index, peer):
        with self._progress_lock:
            self.completed_pieces += 1
            percentage_completed = float(self.completed_pieces) / self.number_of_pieces * 100

            current_log_line = "{}% completed | {}/{} pieces".format(round(percentage_completed, 2),
                                                                     self.completed_pieces, self.number_of_pieces)
            if current_log_line != self.last_log_line:
                print(current_log_line)

            self.last_log_line = current_log_line

    def display_failure(self, piece_index, peer, error):
        print("Piece {} failed from {}, retrying".format(piece_index, peer))

    def _load_torrent(self, args, expected):
        if len(args) != expected:
            raise UsageError("Expected %d argument(s), got %d" % (expected, len(args)))
        return Torrent.load_from_path(args[0])


def main(argv=None):
    args = list(sys.argv[1:] if argv is None else argv)

    verbose = False
    for flag in ('-v', '--verbose'):
        while flag in args:
            args.remove(flag)
            verbose = True

    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO)

    try:
        Run(args).start()
    except UsageError as e:
        print("%s\n\n%s" % (e, USAGE), file=sys.stderr)
        return 1
    except (codec.BencodeError, TorrentError, TrackerError, PeerSessionError, DownloadError, OSError) as e:
        logging.debug("Command failed", exc_info=True)
        print("Error: %s" % e, file=sys.stderr)
        return 1

    return 0


# Entry point of the program.
if __name__ == '__main__':
    sys.exit(main())
