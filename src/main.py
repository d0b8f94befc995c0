#!/usr/bin/python3
"""SageBot: post twice daily aphorism bulletins to APRS-IS."""

import asyncio
import datetime as dt
import functools
import logging
import logging.handlers
import os
import re
import shutil
import signal
import subprocess
import sys
import tomllib
from dataclasses import dataclass
from zoneinfo import ZoneInfo
from zoneinfo import ZoneInfoNotFoundError

import aprslib
import dotenv

from aprsis import APRS_PORT
from aprsis import CONNECT_TIMEOUT
from aprsis import APRSClient
from aprsis import Credentials
from aprsis import TcpTransport
from bulletins import AphorismFile
from bulletins import BulletinScheduler
from bulletins import BulletinService
from bulletins import BulletinSlot


def get_app_metadata():
	repo_path = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
	git_sha = 'unknown'
	if shutil.which('git'):
		try:
			git_sha = subprocess.check_output(['git', 'rev-parse', '--short', 'HEAD'], cwd=repo_path, stderr=subprocess.DEVNULL).decode('ascii').strip()
		except Exception:
			pass
	meta = {'name': 'SageBot', 'version': '0.0.0'}
	try:
		with open(os.path.join(repo_path, 'pyproject.toml'), 'rb') as f:
			data = tomllib.load(f).get('project', {})
			meta.update({k: data.get(k, meta[k]) for k in ['name', 'version']})
	except Exception as e:
		logging.warning('Failed to load project metadata: %s', e)
	return meta['name'], f'{meta["version"]}-{git_sha}'


APP_NAME, APP_VERSION = get_app_metadata()


def configure_logging():
	log_dir = '/var/log/sagebot'
	if not os.path.exists(log_dir) or not os.access(log_dir, os.W_OK):
		log_dir = 'logs'
	if not os.path.exists(log_dir):
		os.makedirs(log_dir)
	logging.getLogger('aprslib').setLevel(logging.INFO)
	logging.getLogger('asyncio').setLevel(logging.WARNING)
	logger = logging.getLogger()
	logger.setLevel(logging.DEBUG)
	formatter = logging.Formatter(
		'%(asctime)s | %(levelname)s | %(name)s.%(funcName)s:%(lineno)d | %(message)s', datefmt='%Y-%m-%dT%H:%M:%S'
	)
	console_handler = logging.StreamHandler()
	console_handler.setLevel(logging.WARNING)
	console_handler.setFormatter(formatter)
	logger.addHandler(console_handler)

	class LevelFilter(logging.Filter):
		def __init__(self, level):
			self.level = level

		def filter(self, record):
			return record.levelno == self.level

	levels = {
		logging.DEBUG: 'debug.log',
		logging.INFO: 'info.log',
		logging.WARNING: 'warning.log',
		logging.ERROR: 'error.log',
		logging.CRITICAL: 'critical.log',
	}
	for level, filename in levels.items():
		try:
			handler = logging.handlers.RotatingFileHandler(os.path.join(log_dir, filename), maxBytes=1 * 1024 * 1024, backupCount=5)
			handler.setLevel(level)
			handler.addFilter(LevelFilter(level))
			handler.setFormatter(formatter)
			logger.addHandler(handler)
		except (OSError, PermissionError) as e:
			logging.error('Failed to create %s: %s', filename, e)


def _env_get_float(key: str, default: float) -> float:
	val = os.getenv(key)
	if val is None:
		return default
	try:
		return float(val)
	except (ValueError, TypeError):
		logging.warning('%s value error, using %s', key, default)
		return default


def _env_get_int(key: str, default: int) -> int:
	val = os.getenv(key)
	if val is None:
		return default
	try:
		return int(val)
	except (ValueError, TypeError):
		logging.warning('%s value error, using %d', key, default)
		return default


def _env_get_time(key: str, default: tuple[int, int]) -> tuple[int, int]:
	"""Parse an HH:MM local time."""
	val = os.getenv(key)
	if val is None:
		return default
	match = re.match(r'^([01]?\d|2[0-3]):([0-5]\d)$', val.strip())
	if not match:
		logging.warning('%s value error, using %02d:%02d', key, *default)
		return default
	return int(match.group(1)), int(match.group(2))


@dataclass
class Config:
	call: str = 'N0CALL'
	passcode: str = '-1'
	server: str = 'noam.aprs2.net'
	port: int = APRS_PORT
	filter: str = ''
	software_name: str = 'SageBot'
	connect_timeout: float = CONNECT_TIMEOUT
	logon_timeout: float = 2.0
	idle_timeout: float = 60.0
	timezone: str = 'America/New_York'
	aphorism_file: str = 'aphorisms.txt'
	morning: tuple[int, int] = (8, 0)
	evening: tuple[int, int] = (20, 0)
	poll_interval: float = 0.25

	def __post_init__(self):
		self.reload()

	def reload(self):
		"""Reload configuration from environment variables."""
		dotenv.load_dotenv('.env', override=True)
		call_base = os.getenv('APRS_CALL', 'N0CALL').strip().upper()
		ssid = os.getenv('APRS_SSID', '0')
		self.call = call_base if ssid == '0' else f'{call_base}-{ssid}'
		passcode = os.getenv('APRS_PASSCODE')
		if passcode:
			self.passcode = passcode
		else:
			logging.warning('Generating passcode')
			self.passcode = str(aprslib.passcode(call_base))
		self.server = os.getenv('APRSIS_SERVER', 'noam.aprs2.net')
		self.port = _env_get_int('APRSIS_PORT', APRS_PORT)
		self.filter = os.getenv('APRSIS_FILTER', f'b/{self.call}*')
		self.software_name = os.getenv('APRS_SOFTWARE_NAME', APP_NAME)
		self.connect_timeout = _env_get_float('APRSIS_CONNECT_TIMEOUT', CONNECT_TIMEOUT)
		self.logon_timeout = _env_get_float('APRSIS_LOGON_TIMEOUT', 2.0)
		self.idle_timeout = _env_get_float('APRSIS_IDLE_TIMEOUT', 60.0)
		self.timezone = os.getenv('TIMEZONE', 'America/New_York')
		self.aphorism_file = os.getenv('APHORISM_FILE', 'aphorisms.txt')
		self.morning = _env_get_time('BULLETIN_MORNING', (8, 0))
		self.evening = _env_get_time('BULLETIN_EVENING', (20, 0))
		self.poll_interval = _env_get_float('POLL_INTERVAL', 0.25)

	@property
	def credentials(self):
		return Credentials(self.call, self.passcode, self.software_name, APP_VERSION, self.filter)

	@property
	def tzinfo(self):
		try:
			return ZoneInfo(self.timezone)
		except (ZoneInfoNotFoundError, ValueError):
			logging.error('Unknown timezone %s, using UTC', self.timezone)
			return dt.timezone.utc


def setup_signal_handling(reload_event):
	"""Setup signal handlers for reloading configuration."""
	loop = asyncio.get_running_loop()

	def signal_handler():
		logging.info('SIGHUP received. Reloading configuration...')
		reload_event.set()

	try:
		loop.add_signal_handler(signal.SIGHUP, signal_handler)
	except (AttributeError, NotImplementedError):
		logging.debug('Signal handling not supported on this platform.')


def initialize_session(cfg):
	"""Build the bulletin service from the current configuration."""
	cfg.reload()
	tz = cfg.tzinfo
	client = APRSClient(
		cfg.credentials,
		cfg.server,
		cfg.port,
		transport_factory=functools.partial(TcpTransport, timeout=cfg.connect_timeout),
		logon_timeout=cfg.logon_timeout,
		idle_timeout=cfg.idle_timeout,
		local_time=lambda: dt.datetime.now(tz),
	)
	scheduler = BulletinScheduler(
		morning=BulletinSlot('morning', *cfg.morning, 'M'),
		evening=BulletinSlot('evening', *cfg.evening, 'E'),
	)
	return BulletinService(client, scheduler, AphorismFile(cfg.aphorism_file)), tz


async def process_loop(cfg, service, tz, reload_event):
	"""Run the main polling loop."""
	while not reload_event.is_set():
		try:
			service.poll(dt.datetime.now(tz))
		except Exception as e:
			logging.error('Error polling APRS-IS: %s', e, exc_info=True)
		await asyncio.sleep(cfg.poll_interval)


async def main():
	"""Main function to run the bulletin loop."""
	reload_event = asyncio.Event()
	setup_signal_handling(reload_event)
	cfg = Config()
	while True:
		reload_event.clear()
		service, tz = initialize_session(cfg)
		logging.info('%s %s starting up as %s via %s:%d', APP_NAME, APP_VERSION, cfg.call, cfg.server, cfg.port)
		try:
			await process_loop(cfg, service, tz, reload_event)
		finally:
			service.client.close()
		if not reload_event.is_set():
			break


if __name__ == '__main__':
	configure_logging()
	exit_code = 0
	try:
		logging.info('Starting the application...')
		asyncio.run(main())
	except KeyboardInterrupt:
		logging.info('Stopping application...')
	except Exception as e:
		logging.critical('Critical error occurred: %s', e, exc_info=True)
		exit_code = 1
	finally:
		logging.info('Exiting script...')
		sys.exit(exit_code)
