import logging
import os


class FilePieceWriter(object):
    """
    Writes verified pieces at their absolute offset in the output file.

    Every write opens its own handle, so workers can write disjoint ranges of
    the same file concurrently.
    """

    def __init__(self, path):
        self.path = path

    def allocate(self, length):
        """
        Create the output file and size it to ``length`` bytes (sparse where supported).
        """
        directory = os.path.dirname(self.path)
        if directory and not os.path.exists(directory):
            os.makedirs(directory)

        mode = 'r+b' if os.path.exists(self.path) else 'wb'
        with open(self.path, mode) as f:
            f.truncate(length)

        logging.debug("Allocated %d bytes for %s" % (length, self.path))

    def write(self, offset, data):
        try:
            f = open(self.path, 'r+b')  # Already existing file
        except FileNotFoundError:
            f = open(self.path, 'wb')  # New file

        with f:
            f.seek(offset)
            f.write(data)
