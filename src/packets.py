"""APRS packet formatting for APRS-IS: bulletins, acknowledgements, positions and helpers.

Everything in this module is a pure function of its arguments.
"""

import math
from enum import Enum

import aprslib
from aprslib.exceptions import ParseError as APRSParseError
from aprslib.exceptions import UnknownFormat as APRSUnknownFormat

# APRS data type identifiers, APRS101.pdf page 17
APRS_ID_POSITION_NO_TIMESTAMP = '!'
APRS_ID_TELEMETRY = 'T'
APRS_ID_WEATHER = '_'
APRS_ID_MESSAGE = ':'
APRS_ID_QUERY = '?'
APRS_ID_STATUS = '>'
APRS_ID_USER_DEF = '{'
APRS_ID_COMMENT = '#'

APRS_PATH = 'APRS,TCPIP*'
BULLETIN_MAX_LEN = 67
BULLETIN_FORBIDDEN = '|~`'
ADDRESSEE_WIDTH = 9
# lines this short carry no usable payload
MIN_PAYLOAD_LEN = 10


class PacketKind(str, Enum):
	"""Markers detected in inbound APRS-IS lines."""

	COMMENT = 'comment'
	WEATHER = 'weather'
	TELEMETRY = 'telemetry'
	MESSAGE = 'message'
	BULLETIN = 'bulletin'


def is_printable(text):
	"""True if every character is printable ASCII."""
	return all(' ' <= ch <= '~' for ch in text)


def pad_callsign(callsign):
	"""Left justify a callsign in a 9 character addressee field, truncating longer ones."""
	return f'{callsign:<{ADDRESSEE_WIDTH}.{ADDRESSEE_WIDTH}s}'


def pad_number(value, width):
	"""Round a value half away from zero and pad it with leading zeros to the given width."""
	val = int(math.copysign(math.floor(abs(value) + 0.5), value))
	return f'{val:0{width}d}'


def _to_aprs_coord(val, pos_char, neg_char, width):
	"""Format a clamped coordinate as degrees and hundredths of minutes."""
	direction = pos_char if val >= 0 else neg_char
	# work in hundredths of a minute so 59.995' carries into the next degree
	total = round(abs(val) * 6000)
	deg, hundredths = divmod(total, 6000)
	return f'{deg:0{width}d}{hundredths / 100:05.2f}{direction}'


def format_location(lat, lon):
	"""Encode decimal degrees as DDmm.mmN/DDDmm.mmW."""
	lat = max(-90.0, min(90.0, lat))
	lon = max(-180.0, min(180.0, lon))
	return f'{_to_aprs_coord(lat, "N", "S", 2)}/{_to_aprs_coord(lon, "E", "W", 3)}'


def check_bulletin(message, bulletin_id):
	"""Raise ValueError if a bulletin text or ID cannot be sent.

	Bulletin IDs are a single digit, announcement IDs a single upper-case letter
	(APRS101.pdf page 83). The text is at most 67 characters and must not contain
	| ~ or a backtick or anything outside printable ASCII. Nothing is ever
	truncated.
	"""
	if len(bulletin_id) != 1 or not ('0' <= bulletin_id <= '9' or 'A' <= bulletin_id <= 'Z'):
		raise ValueError(f'Invalid bulletin ID {bulletin_id!r}')
	if not is_printable(message):
		raise ValueError('Bulletin contains non-printable characters')
	if len(message) > BULLETIN_MAX_LEN:
		raise ValueError(f'Bulletin length {len(message)} exceeds APRS limit of {BULLETIN_MAX_LEN} characters')
	bad = sorted(set(message) & set(BULLETIN_FORBIDDEN))
	if bad:
		raise ValueError(f'Bulletin contains forbidden characters: {"".join(bad)}')


def format_bulletin(callsign, message, bulletin_id):
	"""Build a bulletin or announcement frame.

	 ____________________________
	 |:|BLN|ID|-----|:| Message |
	 |1| 3 | 1|  5  |1| 0 to 67 |
	 |_|___|__|_____|_|_________|
	"""
	check_bulletin(message, bulletin_id)
	return f'{callsign}>{APRS_PATH}:{APRS_ID_MESSAGE}BLN{bulletin_id}     {APRS_ID_MESSAGE}{message}'


def format_ack(callsign, recipient, msg_id):
	"""Build the acknowledgement for message msg_id received from recipient."""
	if not is_printable(recipient) or not is_printable(msg_id):
		raise ValueError(f'Invalid ack for {recipient!r} message {msg_id!r}')
	return f'{callsign}>{APRS_PATH}:{APRS_ID_MESSAGE}{pad_callsign(recipient)}{APRS_ID_MESSAGE}ack{msg_id}'


def validate_packet(packet):
	"""Check an outbound frame with the APRS parser, raising ValueError if it is rejected."""
	if '\r' in packet or '\n' in packet:
		raise ValueError('Packet contains a line break')
	try:
		return aprslib.parse(packet)
	except (APRSParseError, APRSUnknownFormat) as err:
		raise ValueError(f'APRS packet parsing error: {err}') from err


def classify_packet(line):
	"""Return the set of markers found in an inbound APRS-IS line."""
	if line.startswith(APRS_ID_COMMENT):
		return {PacketKind.COMMENT}
	kinds = set()
	if len(line) <= MIN_PAYLOAD_LEN:
		return kinds
	if line.find(APRS_ID_WEATHER) > 0:
		kinds.add(PacketKind.WEATHER)
	if line.find(f'{APRS_ID_TELEMETRY}#') > 0:
		kinds.add(PacketKind.TELEMETRY)
	if line.find(APRS_ID_MESSAGE * 2) > 0:
		if line.find(f'{APRS_ID_MESSAGE * 2}BLN') > 0:
			kinds.add(PacketKind.BULLETIN)
		else:
			kinds.add(PacketKind.MESSAGE)
	return kinds
