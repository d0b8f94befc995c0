"""Unit tests for the bulletin scheduler, aphorism source and bulletin service."""

import datetime as dt
import os
import random
import sys
import unittest
from unittest.mock import MagicMock, mock_open, patch

# Ensure src is in the path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

import bulletins
from aprsis import SendStatus
from bulletins import BulletinScheduler
from bulletins import ScheduleFlags


class TestBulletinScheduler(unittest.TestCase):
	def setUp(self):
		self.scheduler = BulletinScheduler(flags=ScheduleFlags(last_reset_day=19))

	def test_morning_fires_once(self):
		self.assertEqual(self.scheduler.poll(8, 0, 19), [bulletins.MORNING])
		self.assertTrue(self.scheduler.flags.morning_sent)
		self.assertEqual(self.scheduler.poll(8, 0, 19), [])

	def test_evening_fires_once(self):
		self.assertEqual(self.scheduler.poll(20, 0, 19), [bulletins.EVENING])
		self.assertEqual(self.scheduler.poll(20, 0, 19), [])
		self.assertFalse(self.scheduler.flags.morning_sent)

	def test_outside_slot(self):
		for hour, minute in ((7, 59), (8, 1), (19, 0), (20, 1), (0, 0)):
			self.assertEqual(self.scheduler.poll(hour, minute, 19), [])

	def test_day_change_clears_flags(self):
		self.scheduler.flags.morning_sent = True
		self.scheduler.flags.evening_sent = True
		self.assertEqual(self.scheduler.poll(0, 0, 20), [])
		self.assertEqual(self.scheduler.flags, ScheduleFlags(False, False, 20))

	def test_fires_again_next_day(self):
		self.scheduler.poll(8, 0, 19)
		self.scheduler.poll(0, 0, 20)
		self.assertEqual(self.scheduler.poll(8, 0, 20), [bulletins.MORNING])

	def test_reset_runs_after_fire_checks(self):
		self.scheduler.flags.morning_sent = True
		self.assertEqual(self.scheduler.poll(8, 0, 20), [])
		self.assertFalse(self.scheduler.flags.morning_sent)
		self.assertEqual(self.scheduler.poll(8, 0, 20), [bulletins.MORNING])

	def test_first_poll_in_slot(self):
		scheduler = BulletinScheduler()
		self.assertEqual(scheduler.poll(8, 0, 19), [bulletins.MORNING])
		self.assertEqual(scheduler.poll(8, 0, 19), [])
		self.assertEqual(scheduler.flags.last_reset_day, 19)

	def test_custom_slots(self):
		scheduler = BulletinScheduler(morning=bulletins.BulletinSlot('morning', 6, 30, '1'))
		self.assertEqual(scheduler.poll(6, 30, 1), [bulletins.BulletinSlot('morning', 6, 30, '1')])


class TestAphorismFile(unittest.TestCase):
	def test_no_repeats_until_exhausted(self):
		data = 'Keep calm.\n\nLook up.\nBe kind.\n'
		with patch('builtins.open', mock_open(read_data=data)):
			source = bulletins.AphorismFile('aphorisms.txt', rng=random.Random(1))
			picked = [source() for _ in range(3)]
			self.assertEqual(sorted(picked), ['Be kind.', 'Keep calm.', 'Look up.'])
			self.assertIn(source(), picked)

	def test_skips_long_lines(self):
		data = 'x' * 68 + '\nShort one.\n'
		with patch('builtins.open', mock_open(read_data=data)):
			source = bulletins.AphorismFile('aphorisms.txt')
			self.assertEqual(source(), 'Short one.')

	def test_skips_unprintable_lines(self):
		data = 'Caf\u00e9 au lait.\nTab\there.\nPlain text.\n'
		with patch('builtins.open', mock_open(read_data=data)):
			source = bulletins.AphorismFile('aphorisms.txt')
			self.assertEqual(source(), 'Plain text.')
			self.assertEqual(source(), 'Plain text.')

	def test_missing_file(self):
		with patch('builtins.open', side_effect=FileNotFoundError('missing')):
			self.assertEqual(bulletins.AphorismFile('missing.txt')(), '')


class TestBulletinService(unittest.TestCase):
	def setUp(self):
		self.client = MagicMock()
		self.client.ready = True
		self.client.send_bulletin.return_value = SendStatus.SENT
		self.scheduler = BulletinScheduler(flags=ScheduleFlags(last_reset_day=19))
		self.service = bulletins.BulletinService(self.client, self.scheduler, lambda: 'Keep calm.')

	def test_sends_due_bulletin(self):
		results = self.service.poll(dt.datetime(2026, 10, 19, 8, 0, 5))
		self.client.poll.assert_called_once()
		self.client.send_bulletin.assert_called_once_with('Keep calm.', 'M')
		self.assertEqual(results, [(bulletins.MORNING, SendStatus.SENT)])

	def test_nothing_due(self):
		self.assertEqual(self.service.poll(dt.datetime(2026, 10, 19, 9, 0)), [])
		self.client.send_bulletin.assert_not_called()

	def test_not_ready_skips_scheduler(self):
		self.client.ready = False
		self.assertEqual(self.service.poll(dt.datetime(2026, 10, 19, 8, 0)), [])
		self.client.send_bulletin.assert_not_called()
		self.assertFalse(self.scheduler.flags.morning_sent)

	def test_empty_text_skipped(self):
		self.service.text_source = lambda: ''
		self.assertEqual(self.service.poll(dt.datetime(2026, 10, 19, 20, 0)), [])
		self.client.send_bulletin.assert_not_called()
		self.assertTrue(self.scheduler.flags.evening_sent)


if __name__ == '__main__':
	unittest.main()
