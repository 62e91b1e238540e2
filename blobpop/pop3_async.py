# python imports:
import logging

# blobpop imports:
from .auth import Authenticator
from .event_handling import AsyncServer
from .objectstore import ObjectStore
from . import pop3_proto as proto
from .transport import AsyncTransport

logger = logging.getLogger ( __name__ )


class Server ( AsyncServer ):
	protocls = proto.Server

	def __init__ ( self,
		transport: AsyncTransport,
		server_hostname: str,
		store: ObjectStore,
		authenticator: Authenticator,
		prefix: str = '',
	) -> None:
		self.store = store
		self.authenticator = authenticator
		super().__init__ ( transport, self.protocls (
			server_hostname,
			prefix = prefix,
			peer = transport.peer(),
		) )

	async def on_GreetingAcceptEvent ( self, event: proto.GreetingAcceptEvent ) -> None:
		# implementations only need to override this if they want to change the behavior
		event.accept()

	async def on_UserPassEvent ( self, event: proto.UserPassEvent ) -> None:
		if await self.authenticator.authenticate ( event.uid, event.pwd ):
			event.accept()
		else:
			event.reject()

	async def on_ListObjectsEvent ( self, event: proto.ListObjectsEvent ) -> None:
		event.accept ( await self.store.list_objects ( event.prefix ) )

	async def on_GetObjectEvent ( self, event: proto.GetObjectEvent ) -> None:
		event.accept ( await self.store.get_object ( event.key ) )
