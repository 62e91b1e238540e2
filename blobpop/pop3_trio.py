from __future__ import annotations

# python imports:
import logging
import trio # pip install trio trio-typing
from typing import Any, Optional as Opt, Type

# blobpop imports:
from .auth import Authenticator
from .objectstore import ObjectStore
from . import pop3_async
from .transport_trio import TrioTransport as Transport

logger = logging.getLogger ( __name__ )


class Server ( pop3_async.Server ):
	@classmethod
	def from_stream ( cls: Type[Server],
		stream: trio.abc.Stream,
		server_hostname: str,
		store: ObjectStore,
		authenticator: Authenticator,
		prefix: str = '',
	) -> Server:
		transport = Transport ( stream )
		return cls ( transport, server_hostname, store, authenticator, prefix )


async def serve (
	port: int,
	store: ObjectStore,
	authenticator: Authenticator,
	*,
	prefix: str = '',
	server_hostname: str = 'localhost',
	host: Opt[str] = None,
	task_status: Any = trio.TASK_STATUS_IGNORED,
) -> None:
	log = logger.getChild ( 'serve' )

	async def handler ( stream: trio.SocketStream ) -> None:
		srv = Server.from_stream ( stream, server_hostname, store, authenticator, prefix )
		peer = srv.transport.peer()
		log.debug ( f'connected by {peer!r}' )
		try:
			await srv.run()
		except Exception:
			# one broken session must not take the listener down with it
			log.exception ( f'unhandled error in session with {peer!r}:' )
		log.debug ( f'connection closed {peer!r}' )

	log.info ( f'POP3 server listening on port {port}' )
	await trio.serve_tcp ( handler, port, host = host, task_status = task_status )
