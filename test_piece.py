import threading
import unittest

from piece import (BLOCK_SIZE, PieceDescriptor, PieceState, PieceStateTable, build_piece_descriptors,
                   effective_piece_length, iter_blocks)


class PieceDescriptorTestCase(unittest.TestCase):
    def test_last_piece_holds_the_remainder(self):
        hashes = [bytes([i]) * 20 for i in range(3)]
        pieces = build_piece_descriptors(40, 16, hashes)

        self.assertEqual(pieces, [
            PieceDescriptor(0, 16, hashes[0]),
            PieceDescriptor(1, 16, hashes[1]),
            PieceDescriptor(2, 8, hashes[2]),
        ])

    def test_exact_multiple(self):
        pieces = build_piece_descriptors(32, 16, [b"a" * 20, b"b" * 20])

        self.assertEqual([p.length for p in pieces], [16, 16])

    def test_hash_count_mismatch(self):
        with self.assertRaises(ValueError):
            build_piece_descriptors(40, 16, [b"a" * 20])

    def test_effective_piece_length(self):
        self.assertEqual(effective_piece_length(0, 16, 40), 16)
        self.assertEqual(effective_piece_length(2, 16, 40), 8)
        self.assertEqual(effective_piece_length(3, 16, 40), 0)


class BlockTestCase(unittest.TestCase):
    def test_iter_blocks(self):
        self.assertEqual(list(iter_blocks(40000)), [(0, BLOCK_SIZE), (BLOCK_SIZE, BLOCK_SIZE), (32768, 7232)])

    def test_single_short_block(self):
        self.assertEqual(list(iter_blocks(100)), [(0, 100)])


class PieceStateTableTestCase(unittest.TestCase):
    def setUp(self):
        self.table = PieceStateTable()
        self.table.reset(4)

    def test_reset(self):
        self.assertEqual(len(self.table), 4)
        self.assertTrue(self.table.all_in(PieceState.NOT_STARTED))

    def test_compare_and_set(self):
        self.assertTrue(self.table.compare_and_set(1, PieceState.NOT_STARTED, PieceState.IN_PROGRESS))
        self.assertFalse(self.table.compare_and_set(1, PieceState.NOT_STARTED, PieceState.IN_PROGRESS))
        self.assertEqual(self.table.get(1), PieceState.IN_PROGRESS)
        self.assertFalse(self.table.compare_and_set(9, PieceState.NOT_STARTED, PieceState.IN_PROGRESS))

    def test_only_one_thread_claims_a_piece(self):
        winners = []
        barrier = threading.Barrier(8)

        def claim():
            barrier.wait()
            if self.table.compare_and_set(0, PieceState.NOT_STARTED, PieceState.IN_PROGRESS):
                winners.append(threading.current_thread().name)

        threads = [threading.Thread(target=claim) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(winners), 1)

    def test_counts_and_snapshot(self):
        self.table.set(0, PieceState.DONE)
        self.table.set(3, PieceState.DONE)

        self.assertEqual(self.table.count(PieceState.DONE), 2)
        self.assertFalse(self.table.all_in(PieceState.DONE))
        self.assertEqual(self.table.snapshot()[3], PieceState.DONE)

        self.table.clear()
        self.assertEqual(len(self.table), 0)


if __name__ == '__main__':
    unittest.main()
