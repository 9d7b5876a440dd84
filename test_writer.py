import os
import tempfile
import unittest

from writer import FilePieceWriter


class FilePieceWriterTestCase(unittest.TestCase):
    def setUp(self):
        self.directory = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.directory.name, 'out', 'file.bin')
        self.writer = FilePieceWriter(self.path)

    def tearDown(self):
        self.directory.cleanup()

    def test_allocate(self):
        self.writer.allocate(100)

        self.assertEqual(os.path.getsize(self.path), 100)

    def test_writes_at_offsets(self):
        self.writer.allocate(12)
        self.writer.write(8, b"cccc")
        self.writer.write(0, b"aaaa")
        self.writer.write(4, b"bbbb")

        with open(self.path, 'rb') as f:
            self.assertEqual(f.read(), b"aaaabbbbcccc")

    def test_write_without_allocate(self):
        os.makedirs(os.path.dirname(self.path))
        self.writer.write(0, b"data")

        with open(self.path, 'rb') as f:
            self.assertEqual(f.read(), b"data")


if __name__ == '__main__':
    unittest.main()
