# python imports:
from abc import ABCMeta, abstractmethod
import logging
from typing import Optional as Opt, Tuple

# blobpop imports:
from .util import BYTES

logger = logging.getLogger ( __name__ )


class AsyncTransport ( metaclass = ABCMeta ):
	@abstractmethod
	async def read ( self ) -> bytes:
		cls = type ( self )
		raise NotImplementedError ( f'{cls.__module__}.{cls.__name__}.read()' )

	@abstractmethod
	async def write ( self, data: BYTES ) -> None:
		cls = type ( self )
		raise NotImplementedError ( f'{cls.__module__}.{cls.__name__}.write()' )

	@abstractmethod
	async def close ( self ) -> None:
		cls = type ( self )
		raise NotImplementedError ( f'{cls.__module__}.{cls.__name__}.close()' )

	def peer ( self ) -> Opt[Tuple[str,int]]:
		# override if the transport knows who is on the other end
		return None
