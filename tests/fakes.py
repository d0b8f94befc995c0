"""In-memory stand-ins for the TCP transport and the monotonic clock."""

from aprslib.exceptions import ConnectionError as APRSConnectionError


class ManualClock:
	def __init__(self, start=0.0):
		self.now = start

	def __call__(self):
		return self.now

	def advance(self, seconds):
		self.now += seconds


class FakeTransport:
	def __init__(self, connect_ok=True, incoming=''):
		self.connect_ok = connect_ok
		self.is_open = False
		self.rx = bytearray(incoming.encode())
		self.written = []
		self.connects = []
		self.fail_write = False

	def feed(self, data):
		self.rx.extend(data.encode() if isinstance(data, str) else data)

	def connect(self, host, port):
		self.connects.append((host, port))
		if self.connect_ok:
			self.is_open = True
		return self.connect_ok

	def connected(self):
		return self.is_open

	def available(self):
		return len(self.rx) if self.is_open else 0

	def read(self, size):
		data = bytes(self.rx[:size])
		del self.rx[:size]
		return data

	def write_line(self, line):
		if not self.is_open or self.fail_write:
			self.is_open = False
			raise APRSConnectionError('broken pipe')
		self.written.append(line)

	def close(self):
		self.is_open = False
