from __future__ import annotations

# python imports:
import datetime
import logging
import re
from typing import Dict, Iterable, Iterator, List, NamedTuple, Optional as Opt, Set, Tuple

# blobpop imports:
from .util import BYTES

logger = logging.getLogger ( __name__ )

# Amazon SES drops this object into a bucket when a receipt rule is created, it isn't mail
SETUP_NOTIFICATION_ID = 'AMAZON_SES_SETUP_NOTIFICATION'

_r_lf_dot = re.compile ( b'\\n\\.' )
_r_eol = re.compile ( b'\\r?\\n' )
_r_trailing_eol = re.compile ( b'\\r?\\n\\Z' )


class ObjectInfo ( NamedTuple ):
	key: str
	size: int
	last_modified: datetime.datetime


class MessageDescriptor:
	'''
	One message of a MailboxSnapshot. Everything but the deleted flag
	is fixed for the life of the snapshot.
	'''
	def __init__ ( self, id: str, key: str, size: int ) -> None:
		self.id = id
		self.key = key
		self.size = size
		self.deleted = False

	def __repr__ ( self ) -> str:
		cls = type ( self )
		return f'{cls.__module__}.{cls.__name__}(id={self.id!r}, key={self.key!r}, size={self.size!r}, deleted={self.deleted!r})'


def message_id ( key: str, prefix: str ) -> str:
	if prefix and key.startswith ( prefix ):
		key = key[len ( prefix ):]
	return key.lstrip ( '/' )


class MailboxSnapshot:
	'''
	The ordered list of messages resolved at login time.

	Message numbers are 1-based positions in this list and never shift, even
	when messages are marked deleted. A different snapshot may number the same
	objects differently.
	'''
	def __init__ ( self, messages: Iterable[MessageDescriptor] ) -> None:
		self._messages: Tuple[MessageDescriptor,...] = tuple ( messages )
		ids = { msg.id for msg in self._messages }
		assert len ( ids ) == len ( self._messages ), f'duplicate message ids in {self._messages!r}'

	@classmethod
	def from_listing ( cls, objects: Iterable[ObjectInfo], prefix: str = '' ) -> MailboxSnapshot:
		log = logger.getChild ( 'MailboxSnapshot.from_listing' )
		messages: List[MessageDescriptor] = []
		seen: Set[str] = set()
		# sorted() is stable so objects modified at the same instant keep their key order
		for obj in sorted ( objects, key = lambda obj: obj.last_modified ):
			id = message_id ( obj.key, prefix )
			if not id or id == SETUP_NOTIFICATION_ID:
				log.debug ( f'skipping non-message object {obj.key!r}' )
				continue
			if id in seen:
				# prefix stripping folded two keys together, the full key is unique
				log.warning ( f'message id {id!r} already taken, using key {obj.key!r} instead' )
				id = obj.key
			base, n = id, 1
			while id in seen: # duplicate keys in the listing itself
				n += 1
				id = f'{base}.{n}'
			seen.add ( id )
			messages.append ( MessageDescriptor ( id, obj.key, obj.size ) )
		return cls ( messages )

	def __len__ ( self ) -> int:
		# highest valid message number, deleted or not
		return len ( self._messages )

	def get ( self, msgnum: int ) -> Opt[MessageDescriptor]:
		if 1 <= msgnum <= len ( self._messages ):
			return self._messages[msgnum - 1]
		return None

	def visible ( self ) -> Iterator[Tuple[int,MessageDescriptor]]:
		for msgnum, msg in enumerate ( self._messages, 1 ):
			if not msg.deleted:
				yield msgnum, msg

	@property
	def count ( self ) -> int:
		return sum ( 1 for _ in self.visible() )

	@property
	def octets ( self ) -> int:
		return sum ( msg.size for _, msg in self.visible() )

	def undelete_all ( self ) -> None:
		for msg in self._messages:
			msg.deleted = False

	def __repr__ ( self ) -> str:
		cls = type ( self )
		return f'{cls.__module__}.{cls.__name__}({len(self._messages)} messages, {self.count} visible)'


def _split_message ( data: bytes ) -> Tuple[bytes,bytes]:
	# header block ends at the first empty line, CRLF per RFC 5322 but tolerate bare LF
	found: Opt[Tuple[int,bytes]] = None
	for sep in ( b'\r\n\r\n', b'\n\n' ):
		n = data.find ( sep )
		if n >= 0 and ( found is None or n < found[0] ):
			found = ( n, sep )
	if found is not None:
		n, sep = found
		return data[:n], data[n + len ( sep ):]
	# no body, drop the header's own terminator so top() doesn't repeat it
	m = _r_trailing_eol.search ( data )
	return ( data[:m.start()] if m else data ), b''


class CachedMessage:
	def __init__ ( self, raw: bytes ) -> None:
		self.raw = raw
		self.size = len ( raw )
		self.header, body = _split_message ( raw )
		lines = _r_eol.split ( body ) if body else []
		if lines and not lines[-1]: # body ended with an end-of-line
			lines.pop()
		self.body_lines: Tuple[bytes,...] = tuple ( lines )

	def top ( self, nlines: int ) -> bytes:
		assert nlines >= 0, f'invalid {nlines=}'
		return b''.join ( [
			self.header, b'\r\n',
			b'\r\n',
			*( line + b'\r\n' for line in self.body_lines[:nlines] ),
		] )

	def __repr__ ( self ) -> str:
		cls = type ( self )
		return f'{cls.__module__}.{cls.__name__}(size={self.size!r}, body_lines={len(self.body_lines)!r})'


class MessageCache:
	'''
	Messages fetched so far this session, keyed by message id.
	Entries are never evicted, the cache dies with its snapshot.
	'''
	def __init__ ( self ) -> None:
		self._messages: Dict[str,CachedMessage] = {}

	def get ( self, id: str ) -> Opt[CachedMessage]:
		return self._messages.get ( id )

	def put ( self, id: str, message: CachedMessage ) -> None:
		assert id not in self._messages, f'message {id=} already cached'
		self._messages[id] = message

	def clear ( self ) -> None:
		self._messages.clear()

	def __contains__ ( self, id: object ) -> bool:
		return id in self._messages

	def __len__ ( self ) -> int:
		return len ( self._messages )


def dot_stuff ( payload: BYTES ) -> List[bytes]:
	'''
	byte-stuff the termination character (RFC 1939#3) and make sure
	the payload ends with an end-of-line so the sentinel lands on its own line
	'''
	payload = bytes ( payload )
	parts: List[bytes] = []
	last = 0
	if payload[:1] == b'.':
		parts.append ( b'.' )
	for m in _r_lf_dot.finditer ( payload ):
		start = m.start() + 1 # keep the LF, stuff in front of the dot
		parts.append ( payload[last:start] )
		parts.append ( b'.' )
		last = start
	if last < len ( payload ):
		parts.append ( payload[last:] )
	if payload and not payload.endswith ( b'\n' ):
		parts.append ( b'\r\n' )
	return parts
