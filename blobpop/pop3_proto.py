#region PROLOGUE --------------------------------------------------------------
from __future__ import annotations

# python imports:
from abc import abstractmethod
import enum
import logging
import re
from typing import (
	Callable, Dict, Generator, Iterator, List, NamedTuple, Optional as Opt,
	Sequence as Seq, Tuple, Type,
)

# blobpop imports:
from .base_proto import (
	BaseRequest, Event, SendDataEvent, Closed, InternalError, ProtocolError,
	RequestProtocolGenerator, ServerProtocol,
)
from .maildrop import (
	ObjectInfo, MessageDescriptor, MailboxSnapshot, CachedMessage, MessageCache,
	dot_stuff,
)
from .util import BYTES, b2s, s2b

logger = logging.getLogger ( __name__ )


_r_eol = re.compile ( r'[\r\n]' )


#endregion
#region RESPONSES -------------------------------------------------------------

def ResponseEvent ( ok: bool, text: str ) -> SendDataEvent:
	ok_ = '+OK' if ok else '-ERR'
	line = f'{ok_} {text}' if text else ok_
	return SendDataEvent ( s2b ( f'{line}\r\n', 'utf-8' ) )


def SuccessEvent ( text: str = '' ) -> SendDataEvent:
	return ResponseEvent ( True, text )


def ErrorEvent ( text: str ) -> SendDataEvent:
	return ResponseEvent ( False, text )


def MultiResponseEvent ( text: str, *multilines: str ) -> SendDataEvent:
	ok_ = f'+OK {text}' if text else '+OK'
	payload = ''.join ( f'{line}\r\n' for line in multilines )
	return PayloadResponseEvent ( ok_, s2b ( payload, 'utf-8' ) )


def PayloadResponseEvent ( first_line: str, payload: bytes ) -> SendDataEvent:
	# status line, byte-stuffed payload, sentinel
	return SendDataEvent (
		s2b ( f'{first_line}\r\n', 'utf-8' ),
		*dot_stuff ( payload ),
		b'.\r\n',
	)


def _maildrop_summary ( maildrop: MailboxSnapshot ) -> str:
	count = maildrop.count
	return f'maildrop has {count} message{"s" if count != 1 else ""} ({maildrop.octets} octets)'


#endregion
#region EVENTS ----------------------------------------------------------------

class AcceptRejectEvent ( Event ):
	success_message: str
	error_message: str
	_acceptance: Opt[bool] = None

	def __init__ ( self ) -> None:
		self._message: str = self.error_message

	def _accept ( self ) -> None:
		#log = logger.getChild ( 'AcceptRejectEvent.accept' )
		self._acceptance = True
		self._message = self.success_message

	def reject ( self, message: Opt[str] = None ) -> None:
		log = logger.getChild ( 'AcceptRejectEvent.reject' )
		self._acceptance = False
		self._message = self.error_message
		if message is not None:
			if not isinstance ( message, str ) or _r_eol.search ( message ):
				log.error ( f'invalid error-{message=}' )
			else:
				self._message = message

	def _accepted ( self ) -> Tuple[bool,str]:
		#log = logger.getChild ( 'AcceptRejectEvent._accepted' )
		assert self._acceptance is not None, f'you must call .accept() or .reject() on when passed a {type(self).__module__}.{type(self).__name__} object'
		assert isinstance ( self._message, str )
		return self._acceptance, self._message

	def go ( self ) -> Iterator[Event]:
		yield self
		if not self._accepted()[0]:
			raise ErrorEvent ( self._message )

	def __repr__ ( self ) -> str:
		cls = type ( self )
		args = ', '.join ( f'{k}={getattr(self,k)!r}' for k in (
			'_acceptance',
			'_message',
		) )
		return f'{cls.__module__}.{cls.__name__}({args})'


class GreetingAcceptEvent ( AcceptRejectEvent ):
	success_message = 'POP3 server ready'
	error_message = 'Too busy to accept mail right now'

	def accept ( self ) -> None:
		self._accept()


class UserPassEvent ( AcceptRejectEvent ):
	'''
	The authenticator contract point. Handlers decide whether
	`uid` may log in with `pwd` and call accept() or reject()
	'''
	success_message = 'pass accepted'
	error_message = 'pass denied'

	def __init__ ( self, uid: str, pwd: str ) -> None:
		super().__init__()
		self.uid = uid
		self.pwd = pwd

	def accept ( self ) -> None:
		self._accept()

	def __repr__ ( self ) -> str:
		cls = type ( self )
		return f'{cls.__module__}.{cls.__name__}(uid={self.uid!r})'


class ListObjectsEvent ( AcceptRejectEvent ):
	success_message = '' # not used
	error_message = 'maildrop not available'
	objects: Seq[ObjectInfo]

	def __init__ ( self, prefix: str ) -> None:
		super().__init__()
		self.prefix = prefix

	def accept ( self, objects: Seq[ObjectInfo] ) -> None:
		self.objects = objects
		self._accept()

	def __repr__ ( self ) -> str:
		cls = type ( self )
		return f'{cls.__module__}.{cls.__name__}(prefix={self.prefix!r})'


class GetObjectEvent ( AcceptRejectEvent ):
	success_message = '' # not used
	error_message = 'unable to retrieve message'
	data: bytes

	def __init__ ( self, key: str ) -> None:
		super().__init__()
		self.key = key

	def accept ( self, data: bytes ) -> None:
		assert isinstance ( data, ( bytes, bytearray ) ), f'invalid {type(data)=}'
		self.data = bytes ( data )
		self._accept()

	def __repr__ ( self ) -> str:
		cls = type ( self )
		return f'{cls.__module__}.{cls.__name__}(key={self.key!r})'


#endregion
#region COMMAND PARSER --------------------------------------------------------

class Command ( NamedTuple ):
	verb: str
	argtext: str


def parse_command ( line: BYTES ) -> Opt[Command]:
	'''
	split a request line into an upper-cased verb and the rest of the line,
	returns None for a blank line (which gets no response at all)
	'''
	text = b2s ( line, 'utf-8', 'replace' ).strip()
	if not text:
		return None
	verb, *argtext = text.split ( None, 1 )
	return Command ( verb.upper(), argtext[0] if argtext else '' )


def _parse_number ( text: str ) -> Opt[int]:
	# plain ASCII digits only, int() would also take "+1", "1_0" and other scripts' digits
	if text.isascii() and text.isdigit():
		return int ( text )
	return None


def _parse_msgnum ( server: Server, argtext: str ) -> Tuple[int,MessageDescriptor]:
	# raises: SendDataEvent
	maildrop = server.maildrop
	assert maildrop is not None
	msgnum = _parse_number ( argtext ) or 0
	msg = maildrop.get ( msgnum )
	if msg is None:
		raise ErrorEvent ( f'no such message, only {len(maildrop)} messages in maildrop' )
	if msg.deleted:
		raise ErrorEvent ( f'message {msgnum} already deleted' )
	return msgnum, msg


#endregion
#region REQUESTS --------------------------------------------------------------

class Request ( BaseRequest ):
	def _server_protocol ( self, server: ServerProtocol, argtext: str ) -> RequestProtocolGenerator:
		assert isinstance ( server, Server )
		yield from self.server_protocol ( server, argtext )

	@abstractmethod
	def server_protocol ( self, server: Server, argtext: str ) -> RequestProtocolGenerator:
		cls = self.__class__
		raise NotImplementedError ( f'{cls.__module__}.{cls.__name__}.server_protocol()' )


_request_verbs: Dict[str,Type[Request]] = {}
_pop3ext_capa: Dict[str,str] = {
	'PIPELINING': '', # commands are answered strictly in order out of the line buffer
}

def request_verb (
	verb: str,
	*,
	capa: Opt[Tuple[str,str]] = None,
) -> Callable[[Type[Request]],Type[Request]]:
	def registrar ( cls: Type[Request] ) -> Type[Request]:
		assert verb == verb.upper() and ' ' not in verb and len ( verb ) <= 71, f'invalid {verb=}'
		assert verb not in _request_verbs, f'duplicate request verb {verb!r}'
		_request_verbs[verb] = cls
		if capa is not None:
			capa_name, capa_params = capa
			assert capa_name not in _pop3ext_capa, f'duplicate pop3ext {capa_name=}'
			_pop3ext_capa[capa_name] = capa_params
		return cls
	return registrar


class GreetingRequest ( Request ):
	def server_protocol ( self, server: Server, argtext: str ) -> RequestProtocolGenerator:
		event = GreetingAcceptEvent()
		yield from event.go()
		yield SuccessEvent ( event.success_message )


@request_verb ( 'CAPA' )
class CapaRequest ( Request ): # RFC2449
	def server_protocol ( self, server: Server, argtext: str ) -> RequestProtocolGenerator:
		if argtext and server.pedantic:
			raise ErrorEvent ( 'No parameters allowed' )
		lines: List[str] = []
		for capa_name, capa_params in _pop3ext_capa.items():
			lines.append ( f'{capa_name} {capa_params}'.rstrip() )
		yield MultiResponseEvent ( 'Capability list follows', *lines )


@request_verb ( 'USER', capa = ( 'USER', '' ) )
class UserRequest ( Request ):
	def server_protocol ( self, server: Server, argtext: str ) -> RequestProtocolGenerator:
		log = logger.getChild ( 'UserRequest.server_protocol' )
		if not argtext:
			raise ErrorEvent ( 'no username given' )
		if argtext != server.username:
			if server.authenticated:
				log.debug ( f'identity changed from {server.username!r} to {argtext!r}, closing maildrop' )
			server.close_maildrop()
		server.username = argtext
		yield SuccessEvent ( 'user accepted' )


@request_verb ( 'PASS' )
class PassRequest ( Request ):
	def server_protocol ( self, server: Server, argtext: str ) -> RequestProtocolGenerator:
		log = logger.getChild ( 'PassRequest.server_protocol' )
		if server.authenticated:
			raise ErrorEvent ( 'already authenticated' )
		if not server.username:
			raise ErrorEvent ( 'no username given' )

		event1 = UserPassEvent ( server.username, argtext )
		try:
			yield event1
		except Exception as e:
			log.warning ( f'authenticator failed for user {server.username!r}: {e!r}' )
			raise ErrorEvent ( event1.error_message ) from e
		accepted, message = event1._accepted()
		if not accepted:
			log.info ( f'login denied for user {server.username!r} from {server.peer!r}' )
			raise ErrorEvent ( message )

		event2 = ListObjectsEvent ( server.prefix )
		try:
			yield event2
		except Exception as e:
			log.warning ( f'unable to list maildrop {server.prefix!r}: {e!r}' )
			raise ErrorEvent ( event2.error_message ) from e
		accepted, message = event2._accepted()
		if not accepted:
			raise ErrorEvent ( message )

		server.open_maildrop ( MailboxSnapshot.from_listing ( event2.objects, server.prefix ) )
		log.info ( f'successful login from user {server.username!r}' )
		assert server.maildrop is not None
		yield SuccessEvent ( _maildrop_summary ( server.maildrop ) )


@request_verb ( 'STAT' )
class StatRequest ( Request ):
	auth_required = True

	def server_protocol ( self, server: Server, argtext: str ) -> RequestProtocolGenerator:
		if argtext and server.pedantic:
			raise ErrorEvent ( 'No parameters allowed' )
		maildrop = server.maildrop
		assert maildrop is not None
		yield SuccessEvent ( f'{maildrop.count} {maildrop.octets}' )


@request_verb ( 'LIST' )
class ListRequest ( Request ):
	auth_required = True

	def server_protocol ( self, server: Server, argtext: str ) -> RequestProtocolGenerator:
		maildrop = server.maildrop
		assert maildrop is not None
		if argtext:
			msgnum, msg = _parse_msgnum ( server, argtext )
			yield SuccessEvent ( f'{msgnum} {msg.size}' )
			return
		yield MultiResponseEvent (
			f'{maildrop.count} messages ({maildrop.octets} octets)',
			*( f'{msgnum} {msg.size}' for msgnum, msg in maildrop.visible() ),
		)


@request_verb ( 'UIDL', capa = ( 'UIDL', '' ) )
class UidlRequest ( Request ):
	auth_required = True

	def server_protocol ( self, server: Server, argtext: str ) -> RequestProtocolGenerator:
		maildrop = server.maildrop
		assert maildrop is not None
		if argtext:
			msgnum, msg = _parse_msgnum ( server, argtext )
			yield SuccessEvent ( f'{msgnum} {msg.id}' )
			return
		yield MultiResponseEvent (
			'',
			*( f'{msgnum} {msg.id}' for msgnum, msg in maildrop.visible() ),
		)


def fetch_message (
	server: Server,
	msgnum: int,
	msg: MessageDescriptor,
) -> Generator[Event,None,CachedMessage]:
	log = logger.getChild ( 'fetch_message' )
	cached = server.cache.get ( msg.id )
	if cached is not None:
		return cached
	event = GetObjectEvent ( msg.key )
	try:
		yield event
	except Exception as e:
		log.warning ( f'unable to fetch {msg.key!r}: {e!r}' )
		raise ErrorEvent ( f'unable to retrieve message {msgnum}' ) from e
	accepted, message = event._accepted()
	if not accepted:
		raise ErrorEvent ( message )
	cached = CachedMessage ( event.data )
	server.cache.put ( msg.id, cached )
	log.debug ( f'cached message {msg.id!r} ({cached.size} octets)' )
	return cached


@request_verb ( 'TOP', capa = ( 'TOP', '' ) )
class TopRequest ( Request ):
	auth_required = True

	def server_protocol ( self, server: Server, argtext: str ) -> RequestProtocolGenerator:
		args = argtext.split()
		msgnum, msg = _parse_msgnum ( server, args[0] if args else '' )
		nlines = _parse_number ( args[1] ) if len ( args ) > 1 else None
		if nlines is None:
			raise ErrorEvent ( 'invalid line count' )
		cached = yield from fetch_message ( server, msgnum, msg )
		yield PayloadResponseEvent ( '+OK top of message follows', cached.top ( nlines ) )


@request_verb ( 'RETR' )
class RetrRequest ( Request ):
	auth_required = True

	def server_protocol ( self, server: Server, argtext: str ) -> RequestProtocolGenerator:
		msgnum, msg = _parse_msgnum ( server, argtext )
		cached = yield from fetch_message ( server, msgnum, msg )
		yield PayloadResponseEvent ( f'+OK {cached.size} octets', cached.raw )


@request_verb ( 'DELE' )
class DeleRequest ( Request ):
	auth_required = True

	def server_protocol ( self, server: Server, argtext: str ) -> RequestProtocolGenerator:
		# only marks the message, nothing is ever removed from the backend
		msgnum, msg = _parse_msgnum ( server, argtext )
		msg.deleted = True
		yield SuccessEvent ( f'message {msgnum} deleted' )


@request_verb ( 'RSET' )
class RsetRequest ( Request ):
	auth_required = True

	def server_protocol ( self, server: Server, argtext: str ) -> RequestProtocolGenerator:
		if argtext and server.pedantic:
			raise ErrorEvent ( 'No parameters allowed' )
		maildrop = server.maildrop
		assert maildrop is not None
		maildrop.undelete_all()
		yield SuccessEvent ( _maildrop_summary ( maildrop ) )


@request_verb ( 'NOOP' )
class NoOpRequest ( Request ):
	def server_protocol ( self, server: Server, argtext: str ) -> RequestProtocolGenerator:
		if argtext and server.pedantic:
			raise ErrorEvent ( 'No parameters allowed' )
		yield SuccessEvent()


@request_verb ( 'QUIT' )
class QuitRequest ( Request ):
	def server_protocol ( self, server: Server, argtext: str ) -> RequestProtocolGenerator:
		# FYI `argtext` is ignored, QUIT always ends the session
		server.reset()
		server.state = SessionState.CLOSED
		yield SuccessEvent ( 'blobpop POP3 server signing off' )
		raise Closed ( 'QUIT' )


#endregion
#region SERVER ----------------------------------------------------------------

class SessionState ( enum.Enum ):
	UNAUTHENTICATED = 'UNAUTHENTICATED'
	AUTHENTICATED = 'AUTHENTICATED'
	CLOSED = 'CLOSED'


class Server ( ServerProtocol ):
	_MAXLINE = 8192
	state: SessionState
	username: str
	maildrop: Opt[MailboxSnapshot]
	cache: MessageCache

	def __init__ ( self,
		hostname: str,
		prefix: str = '',
		peer: Opt[Tuple[str,int]] = None,
	) -> None:
		self.prefix = prefix
		self.peer = peer
		super().__init__ ( hostname )

	def startup ( self ) -> Iterator[Event]:
		self.request = GreetingRequest()
		self.request_protocol = self.request.server_protocol ( self, '' )
		yield from self._run_protocol()

	def reset ( self ) -> None:
		self.state = SessionState.UNAUTHENTICATED
		self.username = ''
		self.maildrop = None
		self.cache = MessageCache()

	@property
	def authenticated ( self ) -> bool:
		return self.state is SessionState.AUTHENTICATED

	@property
	def closed ( self ) -> bool:
		return self.state is SessionState.CLOSED

	def open_maildrop ( self, maildrop: MailboxSnapshot ) -> None:
		assert self.state is SessionState.UNAUTHENTICATED, f'invalid {self.state=}'
		self.maildrop = maildrop
		self.cache = MessageCache()
		self.state = SessionState.AUTHENTICATED

	def close_maildrop ( self ) -> None:
		assert self.state is not SessionState.CLOSED, f'invalid {self.state=}'
		self.state = SessionState.UNAUTHENTICATED
		self.maildrop = None
		self.cache = MessageCache()

	def _parse_request_line ( self, line: BYTES ) -> Opt[Tuple[Opt[Type[BaseRequest]],str]]:
		log = logger.getChild ( 'Server._parse_request_line' )
		command = parse_command ( line )
		if command is None:
			return None
		requestcls = _request_verbs.get ( command.verb )
		if requestcls is None:
			log.debug ( f'unrecognized {command.verb=}' )
		return requestcls, command.argtext

	def _error_invalid_command ( self ) -> Event:
		return ErrorEvent ( 'Command not recognized' )

	def _error_auth_required ( self ) -> Event:
		return ErrorEvent ( 'Must authenticate first' )

#endregion
