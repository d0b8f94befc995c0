"""APRS-IS session handling: transport, line reader, logon handshake and connection state machine.

Everything here is driven by repeated polls from the host loop. No call blocks
longer than a socket connect or a single short write.
"""

import datetime as dt
import logging
import select
import socket
import time
from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from typing import Callable
from typing import Protocol

from aprslib.exceptions import ConnectionError as APRSConnectionError

import packets

APRS_PORT = 14580
LOGON_TIMEOUT = 2.0
# connect and DNS lookup run inline on the polling loop, keep this short
CONNECT_TIMEOUT = 2.0
BANNER_TIMEOUT = 1.0
IDLE_TIMEOUT = 60.0
MAX_LINE_LEN = 512
# complete lines handled per poll before control returns to the host loop
MAX_LINES_PER_POLL = 16


class Transport(Protocol):
	"""Line oriented byte stream consumed by the client."""

	def connect(self, host: str, port: int) -> bool: ...

	def connected(self) -> bool: ...

	def available(self) -> int: ...

	def read(self, size: int) -> bytes: ...

	def write_line(self, line: str) -> None: ...

	def close(self) -> None: ...


class TcpTransport:
	"""Transport over a TCP socket to an APRS-IS server."""

	def __init__(self, timeout=CONNECT_TIMEOUT):
		self.timeout = timeout
		self._sock = None
		self._rxbuf = bytearray()

	def connect(self, host, port):
		if self.connected():
			return True
		try:
			sock = socket.create_connection((host, port), timeout=self.timeout)
		except OSError as e:
			logging.warning('Unable to connect to APRS-IS server %s:%d: %s', host, port, e)
			return False
		sock.settimeout(self.timeout)
		self._sock = sock
		self._rxbuf.clear()
		return True

	def connected(self):
		return self._sock is not None

	def available(self):
		"""Pull whatever the socket holds without blocking and return the buffered byte count."""
		if self._sock is None:
			return len(self._rxbuf)
		try:
			readable, _, _ = select.select([self._sock], [], [], 0)
			if readable:
				data = self._sock.recv(4096)
				if not data:
					logging.warning('APRS-IS server closed the connection.')
					self.close()
				else:
					self._rxbuf.extend(data)
		except OSError as e:
			logging.warning('APRS-IS socket error: %s', e)
			self.close()
		return len(self._rxbuf)

	def read(self, size):
		data = bytes(self._rxbuf[:size])
		del self._rxbuf[:size]
		return data

	def write_line(self, line):
		if self._sock is None:
			raise APRSConnectionError('not connected')
		try:
			self._sock.sendall(f'{line}\r\n'.encode('utf-8', errors='replace'))
		except OSError as e:
			self.close()
			raise APRSConnectionError(str(e)) from e

	def close(self):
		if self._sock is not None:
			try:
				self._sock.close()
			except OSError:
				pass
			self._sock = None


class PacketReader:
	"""Assemble newline terminated lines from a transport, closing it when the line goes idle."""

	def __init__(self, clock=time.monotonic):
		self.clock = clock
		self.buf = bytearray()
		self.last_progress = clock()
		self.timed_out = False

	def _pop_line(self):
		idx = self.buf.find(b'\n')
		if idx >= 0:
			raw = self.buf[:idx]
			del self.buf[: idx + 1]
		elif len(self.buf) >= MAX_LINE_LEN:
			raw = self.buf[:MAX_LINE_LEN]
			del self.buf[:MAX_LINE_LEN]
		else:
			return None
		return raw.decode('utf-8', errors='replace').rstrip('\r')

	def read_line(self, transport, idle_timeout):
		"""Do one quantum of reading and return (line, ok)."""
		self.timed_out = False
		if not transport.connected():
			return '', False
		line = self._pop_line()
		if line is not None:
			return line, True
		count = transport.available()
		if count:
			self.buf.extend(transport.read(count))
			self.last_progress = self.clock()
			line = self._pop_line()
			if line is not None:
				return line, True
			return '', False
		if not transport.connected():
			return '', False
		if self.clock() - self.last_progress > idle_timeout:
			logging.warning('No data from APRS-IS for %.1fs, closing connection.', idle_timeout)
			transport.close()
			self.timed_out = True
		return '', False


@dataclass(frozen=True)
class Credentials:
	callsign: str
	passcode: str
	client_id: str
	version: str
	filter_string: str = ''


def build_login_line(credentials):
	"""Compose the APRS-IS login command."""
	line = f'user {credentials.callsign} pass {credentials.passcode} vers {credentials.client_id} {credentials.version}'
	if credentials.filter_string:
		line += f' filter {credentials.filter_string}'
	return line


class LogonStatus(str, Enum):
	PENDING = 'pending'
	VERIFIED = 'verified'
	REJECTED = 'rejected'
	TIMED_OUT = 'timed out'
	DROPPED = 'dropped'


class LogonHandshake:
	"""Wait for the server's verification of a login line that has already been sent."""

	def __init__(self, timeout=LOGON_TIMEOUT, clock=time.monotonic):
		self.timeout = timeout
		self.clock = clock
		self.started = clock()
		self.response = None

	@staticmethod
	def judge(line):
		"""Return True for a verified response, False for a rejection, None for anything else."""
		if 'unverified' in line:
			return False
		if 'verified' in line:
			return True
		return None

	def poll(self, reader, transport):
		"""Consume whatever lines are ready and report the handshake status."""
		for _ in range(MAX_LINES_PER_POLL):
			line, ok = reader.read_line(transport, self.timeout)
			if not ok:
				break
			logging.debug('Rcvd: %s', line)
			verdict = self.judge(line)
			if verdict is None:
				continue
			self.response = line
			return LogonStatus.VERIFIED if verdict else LogonStatus.REJECTED
		if reader.timed_out or self.clock() - self.started > self.timeout:
			return LogonStatus.TIMED_OUT
		if not transport.connected():
			return LogonStatus.DROPPED
		return LogonStatus.PENDING

	def verify(self, reader, transport, sleep=time.sleep):
		"""Poll until the login is verified, rejected or the timeout expires."""
		while True:
			status = self.poll(reader, transport)
			if status is not LogonStatus.PENDING:
				return status is LogonStatus.VERIFIED
			sleep(0)


class ConnectionState(str, Enum):
	DISCONNECTED = 'disconnected'
	CONNECTED = 'connected'
	LOGGED_IN = 'logged in'
	VERIFIED = 'verified'


class SendStatus(str, Enum):
	SENT = 'sent'
	NOT_READY = 'not ready'
	REJECTED = 'rejected'
	FAILED = 'failed'


@dataclass
class Session:
	"""A live transport and its reader; never reused after a drop."""

	transport: Transport
	reader: PacketReader
	opened: float
	handshake: LogonHandshake | None = None


@dataclass
class InboundData:
	"""Latest payloads seen on the feed, by marker."""

	weather: str = ''
	weather_age: str = ''
	telemetry: str = ''
	message: str = ''
	bulletin: str = ''
	counts: dict = field(default_factory=dict)


class APRSClient:
	"""Poll driven APRS-IS connection: Disconnected -> Connected -> LoggedIn -> Verified."""

	def __init__(
		self,
		credentials,
		server,
		port=APRS_PORT,
		transport_factory: Callable[[], Transport] = TcpTransport,
		logon_timeout=LOGON_TIMEOUT,
		idle_timeout=IDLE_TIMEOUT,
		banner_timeout=BANNER_TIMEOUT,
		clock=time.monotonic,
		local_time: Callable[[], dt.datetime] = dt.datetime.now,
		on_packet=None,
	):
		self.credentials = credentials
		self.server = server
		self.port = port
		self.transport_factory = transport_factory
		self.logon_timeout = logon_timeout
		self.idle_timeout = idle_timeout
		self.banner_timeout = banner_timeout
		self.clock = clock
		self.local_time = local_time
		self.on_packet = on_packet
		self.state = ConnectionState.DISCONNECTED
		self.session = None
		self.inbound = InboundData()

	@property
	def ready(self):
		return self.state is ConnectionState.VERIFIED

	def _open_session(self):
		"""Connect a fresh transport, returning True on success."""
		if self.session and self.session.transport.connected():
			return True
		transport = self.transport_factory()
		if not transport.connect(self.server, self.port):
			return False
		self.session = Session(transport=transport, reader=PacketReader(self.clock), opened=self.clock())
		return True

	def _drop(self, reason):
		if self.session:
			self.session.transport.close()
		self.session = None
		if self.state is not ConnectionState.DISCONNECTED:
			logging.warning('APRS-IS connection lost (%s), reconnecting on next poll.', reason)
		self.state = ConnectionState.DISCONNECTED

	def poll(self):
		"""Advance the connection by at most one state transition."""
		try:
			if self.state is ConnectionState.DISCONNECTED:
				self._poll_disconnected()
			elif self.state is ConnectionState.CONNECTED:
				self._poll_connected()
			elif self.state is ConnectionState.LOGGED_IN:
				self._poll_logged_in()
			else:
				self._poll_verified()
		except APRSConnectionError as err:
			self._drop(err)
		return self.state

	def _poll_disconnected(self):
		if self._open_session():
			logging.info('Connected to APRS-IS server %s:%d', self.server, self.port)
			self.state = ConnectionState.CONNECTED
		else:
			logging.debug('APRS-IS connection to %s:%d failed.', self.server, self.port)

	def _poll_connected(self):
		session = self.session
		line, ok = session.reader.read_line(session.transport, self.idle_timeout)
		if not ok:
			if not session.transport.connected():
				self._drop('closed before login')
				return
			if self.clock() - session.opened <= self.banner_timeout:
				return
		else:
			logging.debug('Rcvd: %s', line)
			if line.find('full') > 0:
				logging.warning('APRS port full. Retrying.')
				session.transport.close()
				self.session = None
				if not self._open_session():
					logging.warning('APRS reconnection failed.')
					self.state = ConnectionState.DISCONNECTED
					return
				logging.info('APRS reconnected successfully.')
		self._send_login()

	def _send_login(self):
		session = self.session
		login = build_login_line(self.credentials)
		session.transport.write_line(login)
		logging.info('APRS logon: %s', login)
		session.reader.last_progress = self.clock()
		session.handshake = LogonHandshake(self.logon_timeout, self.clock)
		self.state = ConnectionState.LOGGED_IN

	def _poll_logged_in(self):
		session = self.session
		status = session.handshake.poll(session.reader, session.transport)
		if status is LogonStatus.PENDING:
			return
		if status is LogonStatus.VERIFIED:
			logging.info('APRS-IS login verified: %s', session.handshake.response)
			session.reader.last_progress = self.clock()
			self.state = ConnectionState.VERIFIED
			return
		self._drop(f'login {status.value}')

	def _poll_verified(self):
		session = self.session
		for _ in range(MAX_LINES_PER_POLL):
			line, ok = session.reader.read_line(session.transport, self.idle_timeout)
			if not ok:
				break
			self._handle_line(line)
		if not session.transport.connected():
			self._drop('read timeout' if session.reader.timed_out else 'remote close')

	def _handle_line(self, line):
		kinds = packets.classify_packet(line)
		logging.debug('Rcvd: %s', line)
		inbound = self.inbound
		for kind in kinds:
			inbound.counts[kind] = inbound.counts.get(kind, 0) + 1
		if packets.PacketKind.WEATHER in kinds and inbound.weather != line:
			inbound.weather = line
			inbound.weather_age = self.local_time().strftime('%H:%M:%S')
		if packets.PacketKind.TELEMETRY in kinds:
			inbound.telemetry = line
		if packets.PacketKind.MESSAGE in kinds:
			inbound.message = line
		if packets.PacketKind.BULLETIN in kinds:
			inbound.bulletin = line
		if self.on_packet:
			self.on_packet(line, kinds)

	def send_packet(self, payload, log_context='packet'):
		"""Write one already formatted frame, only while verified."""
		if not self.ready:
			logging.warning('APRS-IS not ready, %s not sent: %s', log_context, payload)
			return SendStatus.NOT_READY
		try:
			packets.validate_packet(payload)
		except ValueError as err:
			logging.error('%s rejected: %s', log_context, err)
			return SendStatus.REJECTED
		try:
			self.session.transport.write_line(payload)
		except APRSConnectionError as err:
			logging.error('APRS connection error at %s: %s', log_context, err)
			self._drop(err)
			return SendStatus.FAILED
		logging.info('APRS posted: %s', payload)
		return SendStatus.SENT

	def send_bulletin(self, message, bulletin_id):
		"""Send a bulletin (digit ID) or announcement (letter ID)."""
		try:
			frame = packets.format_bulletin(self.credentials.callsign, message, bulletin_id)
		except ValueError as err:
			logging.error('APRS bulletin dropped: %s', err)
			return SendStatus.REJECTED
		return self.send_packet(frame, f'bulletin {bulletin_id}')

	def send_ack(self, recipient, msg_id):
		try:
			frame = packets.format_ack(self.credentials.callsign, recipient, msg_id)
		except ValueError as err:
			logging.error('APRS ack dropped: %s', err)
			return SendStatus.REJECTED
		return self.send_packet(frame, 'ack')

	def close(self):
		"""Close the APRS-IS connection."""
		if self.session:
			self.session.transport.close()
		self.session = None
		self.state = ConnectionState.DISCONNECTED
