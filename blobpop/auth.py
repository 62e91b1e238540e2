# python imports:
from abc import ABCMeta, abstractmethod
import hmac
import logging

# blobpop imports:
from .util import s2b

logger = logging.getLogger ( __name__ )


class Authenticator ( metaclass = ABCMeta ):
	@abstractmethod
	async def authenticate ( self, identity: str, secret: str ) -> bool:
		cls = type ( self )
		raise NotImplementedError ( f'{cls.__module__}.{cls.__name__}.authenticate()' )


class FixedSecretAuthenticator ( Authenticator ):
	'''
	Accepts any identity presenting the one shared secret.
	Only suitable for testing and single-user setups.
	'''
	def __init__ ( self, secret: str ) -> None:
		assert isinstance ( secret, str ) and secret, 'a non-empty secret is required'
		self._secret = s2b ( secret, 'utf-8' )

	async def authenticate ( self, identity: str, secret: str ) -> bool:
		return hmac.compare_digest ( self._secret, s2b ( secret, 'utf-8' ) )
