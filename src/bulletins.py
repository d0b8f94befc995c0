"""Twice daily APRS bulletins: wall clock scheduler, text source and the service tying them to the client."""

import logging
import random
from dataclasses import dataclass
from typing import NamedTuple

from packets import BULLETIN_MAX_LEN
from packets import is_printable


class BulletinSlot(NamedTuple):
	name: str
	hour: int
	minute: int
	bulletin_id: str


MORNING = BulletinSlot('morning', 8, 0, 'M')
EVENING = BulletinSlot('evening', 20, 0, 'E')


@dataclass
class ScheduleFlags:
	morning_sent: bool = False
	evening_sent: bool = False
	last_reset_day: int | None = None


class BulletinScheduler:
	"""Decide once per poll whether the morning or evening bulletin is due.

	The sent flags, not the clock, decide: a slot fires on the first poll inside
	its minute and not again until the flags are cleared by a change of day.
	"""

	def __init__(self, morning=MORNING, evening=EVENING, flags=None):
		self.morning = morning
		self.evening = evening
		self.flags = flags or ScheduleFlags()

	def poll(self, hour, minute, day):
		"""Return the slots due at this local time, marking them sent."""
		due = []
		flags = self.flags
		if (hour, minute) == (self.morning.hour, self.morning.minute) and not flags.morning_sent:
			due.append(self.morning)
			flags.morning_sent = True
		if (hour, minute) == (self.evening.hour, self.evening.minute) and not flags.evening_sent:
			due.append(self.evening)
			flags.evening_sent = True
		# runs after the fire checks so a trigger in the rollover minute is kept
		if day != flags.last_reset_day:
			if flags.last_reset_day is None:
				flags.last_reset_day = day
			else:
				logging.debug('Day changed %s -> %s, clearing bulletin flags.', flags.last_reset_day, day)
				flags.last_reset_day = day
				flags.morning_sent = False
				flags.evening_sent = False
		return due


class AphorismFile:
	"""Pick bulletin text as random lines of a file, without repeats until every line has been used."""

	def __init__(self, path, rng=None):
		self.path = path
		self.rng = rng or random.Random()
		self._order = []

	def _load(self):
		try:
			with open(self.path, encoding='utf-8') as f:
				lines = [line.strip() for line in f]
		except (IOError, OSError) as e:
			logging.error('Failed to read aphorism file %s: %s', self.path, e)
			return []
		usable = [line for line in lines if line and len(line) <= BULLETIN_MAX_LEN and is_printable(line)]
		if len(usable) < len([line for line in lines if line]):
			logging.warning('Skipped aphorisms over %d characters or not printable ASCII in %s', BULLETIN_MAX_LEN, self.path)
		return usable

	def __call__(self):
		if not self._order:
			self._order = self._load()
			self.rng.shuffle(self._order)
		if not self._order:
			return ''
		return self._order.pop()


class BulletinService:
	"""Own the connection and the schedule; the host loop calls poll() every cycle."""

	def __init__(self, client, scheduler, text_source):
		self.client = client
		self.scheduler = scheduler
		self.text_source = text_source

	def poll(self, now):
		"""Poll the connection and, once verified, send any bulletin due at local time now."""
		self.client.poll()
		if not self.client.ready:
			return []
		results = []
		for slot in self.scheduler.poll(now.hour, now.minute, now.day):
			text = self.text_source()
			if not text:
				logging.warning('No text available for the %s bulletin, skipping.', slot.name)
				continue
			logging.info('Sending %s bulletin BLN%s: %s', slot.name, slot.bulletin_id, text)
			status = self.client.send_bulletin(text, slot.bulletin_id)
			results.append((slot, status))
		return results
