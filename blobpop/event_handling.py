from __future__ import annotations

# python imports:
from abc import ABCMeta
import contextlib
import logging
import sys
from typing import Iterator, Type

# blobpop imports:
from .base_proto import (
	Event, SendDataEvent, ServerProtocol, Closed, InternalError, ProtocolError,
)
from .transport import AsyncTransport
from .util import trunc

logger = logging.getLogger ( __name__ )


@contextlib.contextmanager
def _event_exception_safety ( event: Event ) -> Iterator[None]:
	try:
		yield
	except Closed:
		raise
	except Exception:
		event.exc_info = sys.exc_info()


@contextlib.contextmanager
def close_if_oserror() -> Iterator[None]:
	try:
		yield
	except OSError as e:
		raise Closed ( repr ( e ) ) from e


class AsyncEventHandler:
	transport: AsyncTransport

	async def on_SendDataEvent ( self, event: SendDataEvent ) -> None:
		log = logger.getChild ( 'AsyncEventHandler.on_SendDataEvent' )
		for chunk in event.chunks:
			log.debug ( f'S>{trunc(chunk)}' )
			with close_if_oserror():
				await self.transport.write ( chunk )

	async def _on_event ( self, event: Event ) -> None:
		#log = logger.getChild ( 'AsyncEventHandler._on_event' )
		with _event_exception_safety ( event ):
			func = getattr ( self, f'on_{type(event).__name__}' )
			await func ( event )

	async def close ( self ) -> None:
		await self.transport.close()


class Server ( metaclass = ABCMeta ):
	protocls: Type[ServerProtocol]
	proto: ServerProtocol


class AsyncServer ( AsyncEventHandler, Server ):
	def __init__ ( self,
		transport: AsyncTransport,
		proto: ServerProtocol,
	) -> None:
		assert isinstance ( proto, self.protocls ), f'invalid {proto=}'
		self.transport = transport
		self.proto = proto

	async def run ( self ) -> None:
		log = logger.getChild ( 'AsyncServer.run' )
		try:
			for event in self.proto.startup():
				await self._on_event ( event )

			while True:
				with close_if_oserror():
					data = await self.transport.read()
				log.debug ( f'C>{trunc(data)}' )
				for event in self.proto.receive ( data ):
					await self._on_event ( event )
		except InternalError as e:
			log.error ( f'connection aborted by internal error: {e.args[0]!r}' )
		except Closed as e:
			log.debug ( f'connection closed with reason: {e.args[0]!r}' )
		except ProtocolError as e:
			log.warning ( f'connection closed by protocol error: {e!r}' )
		finally:
			await self.transport.close()
