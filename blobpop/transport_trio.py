from __future__ import annotations

# python imports:
import logging
import trio # pip install trio trio-typing
from typing import Optional as Opt, Tuple

# blobpop imports:
from .transport import AsyncTransport
from .util import BYTES

logger = logging.getLogger ( __name__ )


class TrioTransport ( AsyncTransport ):
	read_timeout: float = 600.0 # RFC1939#3 autologout timer must be at least 10 minutes
	write_timeout: float = 60.0
	close_timeout: float = 0.05
	stream: trio.abc.Stream

	def __init__ ( self, stream: trio.abc.Stream ) -> None:
		self.stream = stream

	async def read ( self ) -> bytes:
		#log = logger.getChild ( 'TrioTransport.read' )
		with trio.move_on_after ( self.read_timeout ):
			return await self.stream.receive_some()
		raise TimeoutError ( f'{type(self).__module__}.{type(self).__name__} timeout waiting to read data' )

	async def write ( self, data: BYTES ) -> None:
		#log = logger.getChild ( 'TrioTransport.write' )
		with trio.move_on_after ( self.write_timeout ):
			await self.stream.send_all ( data )
			return
		raise TimeoutError ( f'{type(self).__module__}.{type(self).__name__} timeout waiting to write {len(data)} bytes' )

	async def close ( self ) -> None:
		#log = logger.getChild ( 'TrioTransport.close' )
		with trio.move_on_after ( self.close_timeout ):
			await self.stream.aclose()

	def peer ( self ) -> Opt[Tuple[str,int]]:
		sock = getattr ( self.stream, 'socket', None )
		if sock is None:
			return None
		try:
			address, port, *_ = sock.getpeername()
		except OSError:
			return None
		return str ( address ), int ( port )
