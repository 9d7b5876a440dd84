import contextlib
import hashlib
import io
import os
import tempfile
import threading
import unittest

import bcoding

import main


def run(*args):
    stdout, stderr = io.StringIO(), io.StringIO()
    with contextlib.redirect_stdout(stdout), contextlib.redirect_stderr(stderr):
        code = main.main(list(args))
    return code, stdout.getvalue(), stderr.getvalue()


class MainTestCase(unittest.TestCase):
    def test_decode(self):
        code, out, _ = run('decode', 'd3:bar4:spam3:fooi42ee')

        self.assertEqual(code, 0)
        self.assertEqual(out.strip(), '{"bar": "spam", "foo": 42}')

    def test_decode_malformed(self):
        code, _, err = run('decode', 'i42')

        self.assertEqual(code, 1)
        self.assertIn('Error', err)

    def test_info(self):
        pieces = hashlib.sha1(b'abc').digest()
        info = {'length': 3, 'name': 'abc.txt', 'piece length': 16384, 'pieces': pieces}

        with tempfile.TemporaryDirectory() as directory:
            path = os.path.join(directory, 'abc.torrent')
            with open(path, 'wb') as f:
                f.write(bcoding.bencode({'announce': 'http://tracker.example/announce', 'info': info}))

            code, out, _ = run('info', path)

        self.assertEqual(code, 0)
        self.assertIn('Tracker URL: http://tracker.example/announce', out)
        self.assertIn('Length: 3', out)
        self.assertIn('Info Hash: %s' % hashlib.sha1(bcoding.bencode(info)).hexdigest(), out)
        self.assertIn(pieces.hex(), out)

    def test_usage_errors(self):
        for args in ([], ['unknown'], ['download', 'file.torrent'], ['handshake', 'file.torrent']):
            code, _, err = run(*args)

            self.assertEqual(code, 1)
            self.assertIn('usage: tordl', err)

    def test_missing_file(self):
        code, _, err = run('info', '/nonexistent/file.torrent')

        self.assertEqual(code, 1)
        self.assertIn('Error', err)

    def test_display_progression_from_many_threads(self):
        runner = main.Run([])
        runner.number_of_pieces = 400

        def report(worker):
            for index in range(50):
                runner.display_progression(worker * 50 + index, '127.0.0.%d:6881' % worker)

        stdout = io.StringIO()
        with contextlib.redirect_stdout(stdout):
            threads = [threading.Thread(target=report, args=(i,)) for i in range(8)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(10)

        lines = stdout.getvalue().splitlines()
        self.assertEqual(runner.completed_pieces, 400)
        self.assertEqual(len(lines), 400)
        self.assertEqual(lines[-1], '100.0% completed | 400/400 pieces')


if __name__ == '__main__':
    unittest.main()
