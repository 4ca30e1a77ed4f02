import threading
import unittest

from .channel import Mailbox


class TestMailbox(unittest.TestCase):
    def setUp(self):
        self.mailbox = Mailbox("test")

    def test_offer_overwrites_unconsumed_item(self):
        """Test that the consumer only sees the latest item"""
        self.assertTrue(self.mailbox.offer({"generation": 1}))
        self.assertTrue(self.mailbox.offer({"generation": 2}))

        self.assertEqual(self.mailbox.take(timeout=0.1), {"generation": 2})
        self.assertEqual(self.mailbox.overwritten, 1)
        self.assertIsNone(self.mailbox.take(timeout=0.01))

    def test_offer_after_close_is_dropped(self):
        self.mailbox.close()

        self.assertFalse(self.mailbox.offer({"generation": 1}))
        self.assertEqual(self.mailbox.dropped, 1)
        self.assertIsNone(self.mailbox.take(timeout=0.01))

    def test_close_is_idempotent(self):
        self.assertTrue(self.mailbox.close())
        self.assertFalse(self.mailbox.close())
        self.assertTrue(self.mailbox.closed)

    def test_close_wakes_consumer(self):
        results = []
        consumer = threading.Thread(target=lambda: results.append(self.mailbox.take()))
        consumer.start()

        self.mailbox.close()
        consumer.join(1)

        self.assertFalse(consumer.is_alive())
        self.assertEqual(results, [None])

    def test_offer_never_blocks_without_consumer(self):
        for i in range(100):
            self.assertTrue(self.mailbox.offer(i))
        self.assertEqual(self.mailbox.take(timeout=0.01), 99)


if __name__ == '__main__':
    unittest.main()
