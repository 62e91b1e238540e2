from __future__ import annotations

# python imports:
from abc import ABCMeta, abstractmethod
import logging
import re
from types import TracebackType
from typing import (
	Generator, Iterator, Optional as Opt, Sequence as Seq, Tuple, Type, Union,
)

# blobpop imports:
from .util import bytes_types, BYTES

logger = logging.getLogger ( __name__ )

EXC_INFO = Opt[Union[
	Tuple[Type[BaseException],BaseException,TracebackType],
	Tuple[None,None,None],
]]

_r_eol = re.compile ( r'[\r\n]' )


class Event ( Exception ):
	exc_info: EXC_INFO = None

	def __repr__ ( self ) -> str:
		cls = type ( self )
		return f'{cls.__module__}.{cls.__name__}()'


class Closed ( Exception ):
	def __init__ ( self, reason: str = '' ) -> None:
		super().__init__ ( reason or '(none given)' )


class InternalError ( Closed ):
	'''
	A request protocol failed with an unexpected exception. The session's
	state can no longer be trusted so the connection must not be served further.
	The original exception is available as __cause__
	'''


class ProtocolError ( Exception ):
	pass


RequestProtocolGenerator = Generator[Event,None,None]


class BaseRequest ( metaclass = ABCMeta ):
	# this class is the basis of all server command handling
	# 1) server bypasses __init__() because requests are created from a parsed line
	# 2) _server_protocol() implements the server-side state machine for one command
	auth_required: bool = False

	def __repr__ ( self ) -> str:
		cls = type ( self )
		return f'{cls.__module__}.{cls.__name__}()'

	@abstractmethod
	def _server_protocol ( self, server: ServerProtocol, argtext: str ) -> RequestProtocolGenerator:
		cls = type ( self )
		raise NotImplementedError ( f'{cls.__module__}.{cls.__name__}._server_protocol()' )


class SendDataEvent ( Event ):

	def __init__ ( self, *chunks: bytes ) -> None:
		self.chunks: Seq[bytes] = chunks

	def __repr__ ( self ) -> str:
		cls = type ( self )
		return f'{cls.__module__}.{cls.__name__}(chunks={self.chunks!r})'


class Protocol ( metaclass = ABCMeta ):
	_buf: bytes = b''
	request: Opt[BaseRequest] = None
	request_protocol: Opt[RequestProtocolGenerator] = None
	_MAXLINE: int

	def receive ( self, data: bytes ) -> Iterator[Event]:
		#log = logger.getChild ( 'Protocol.receive' )
		assert isinstance ( data, bytes_types ), f'invalid {data=}'
		if not data: # EOF indicator
			if self._buf:
				buf, self._buf = self._buf, b''
				yield from self._receive_line ( buf )
				return
			raise Closed ( 'EOF' )
		self._buf += data
		start = 0
		end = 0
		try:
			while ( end := ( self._buf.find ( b'\n', start ) + 1 ) ):
				line = memoryview ( self._buf )[start:end]
				start = end
				yield from self._receive_line ( line )
		finally:
			if start:
				self._buf = self._buf[start:]
		if len ( self._buf ) >= self._MAXLINE:
			raise ProtocolError ( 'maximum line length exceeded' )

	@abstractmethod
	def _receive_line ( self, line: BYTES ) -> Iterator[Event]:
		cls = type ( self )
		raise NotImplementedError ( f'{cls.__module__}.{cls.__name__}._receive_line()' )

	def _run_protocol ( self ) -> Iterator[Event]:
		log = logger.getChild ( 'Protocol._run_protocol' )
		assert self.request is not None, f'invalid {self.request=}'
		assert self.request_protocol is not None, f'invalid {self.request_protocol=}'
		try:
			event = next ( self.request_protocol )
			while True:
				log.debug ( f'yielding {type(event).__name__}' )
				yield event
				if event.exc_info:
					# the handler failed, let the request decide what that means
					exc_info, event.exc_info = event.exc_info, None
					assert exc_info[1] is not None
					event = self.request_protocol.throw ( exc_info[1] )
				else:
					event = next ( self.request_protocol )
		except Closed:
			self.request = None
			self.request_protocol = None
			raise
		except SendDataEvent as event: # request finished with a response
			#log.debug ( f'protocol finished with {event=}' )
			self.request = None
			self.request_protocol = None
			yield event
		except StopIteration:
			self.request = None
			self.request_protocol = None
		except Exception as e:
			self.request = None
			self.request_protocol = None
			log.exception ( 'internal protocol error:' )
			raise InternalError ( repr ( e ) ) from e


class ServerProtocol ( Protocol ):
	pedantic: bool = True # set this to False to relax behaviors that cause no harm for the protocol

	def __init__ ( self, hostname: str ) -> None:
		assert isinstance ( hostname, str ) and not _r_eol.search ( hostname ), f'invalid {hostname=}'
		self.hostname = hostname
		self.reset()

	def reset ( self ) -> None:
		pass

	@property
	def authenticated ( self ) -> bool:
		return False

	@property
	def closed ( self ) -> bool:
		return False

	def startup ( self ) -> Iterator[Event]:
		# override this if server protocol needs to say "hi" first
		yield from ()

	@abstractmethod
	def _parse_request_line ( self, line: BYTES ) -> Opt[Tuple[Opt[Type[BaseRequest]],str]]:
		# return None for a line that deserves no response at all
		cls = type ( self )
		raise NotImplementedError ( f'{cls.__module__}.{cls.__name__}._parse_request_line()' )

	@abstractmethod
	def _error_invalid_command ( self ) -> Event:
		cls = type ( self )
		raise NotImplementedError ( f'{cls.__module__}.{cls.__name__}._error_invalid_command()' )

	@abstractmethod
	def _error_auth_required ( self ) -> Event:
		cls = type ( self )
		raise NotImplementedError ( f'{cls.__module__}.{cls.__name__}._error_auth_required()' )

	def _receive_line ( self, line: BYTES ) -> Iterator[Event]:
		#log = logger.getChild ( 'ServerProtocol._receive_line' )
		if self.closed:
			raise Closed ( 'session already closed' )
		assert self.request is None, 'server internal state error - a request is still active'
		parsed = self._parse_request_line ( line )
		if parsed is None:
			return
		requestcls, argtext = parsed
		if requestcls is None:
			yield self._error_invalid_command()
			return
		if requestcls.auth_required and not self.authenticated:
			yield self._error_auth_required()
			return
		request: BaseRequest = requestcls.__new__ ( requestcls )
		self.request = request
		self.request_protocol = request._server_protocol ( self, argtext )
		yield from self._run_protocol()
