# python imports:
import argparse
from functools import partial
import logging
import os
import socket
import sys
import trio # pip install trio trio-typing
from typing import List, Optional as Opt

# blobpop imports:
from . import __version__
from .auth import FixedSecretAuthenticator
from .objectstore import DirectoryObjectStore
from . import pop3_trio

logger = logging.getLogger ( __name__ )


def _parser() -> argparse.ArgumentParser:
	env = os.environ.get
	parser = argparse.ArgumentParser (
		prog = 'blobpop',
		description = 'POP3 server exposing an object store prefix as a read-only maildrop',
	)
	parser.add_argument ( '--version', action = 'version', version = f'%(prog)s {__version__}' )
	parser.add_argument ( '--host', default = env ( 'BLOBPOP_HOST' ),
		help = 'address to listen on (default: all interfaces)',
	)
	parser.add_argument ( '-p', '--port', type = int, default = int ( env ( 'BLOBPOP_PORT', '110' ) ),
		help = 'port to run the POP3 server on (default: %(default)s)',
	)
	parser.add_argument ( '--root', default = env ( 'BLOBPOP_ROOT' ),
		help = 'directory holding the message objects',
	)
	parser.add_argument ( '--prefix', default = env ( 'BLOBPOP_PREFIX', '' ),
		help = 'only objects whose key starts with this prefix are messages',
	)
	parser.add_argument ( '--secret', default = env ( 'BLOBPOP_SECRET' ),
		help = 'shared secret every user logs in with',
	)
	parser.add_argument ( '--hostname', default = socket.getfqdn(),
		help = 'server hostname (default: %(default)s)',
	)
	parser.add_argument ( '-v', '--verbose', action = 'store_true',
		help = 'run with verbose logging',
	)
	return parser


def main ( argv: Opt[List[str]] = None ) -> int:
	parser = _parser()
	args = parser.parse_args ( argv )
	if not args.root or not args.secret:
		parser.error ( 'please provide an object store root (--root) and a secret (--secret)' )

	logging.basicConfig (
		stream = sys.stdout,
		level = logging.DEBUG if args.verbose else logging.INFO,
		format = '[%(name)s %(levelname)s] %(message)s',
	)
	log = logger.getChild ( 'main' )

	store = DirectoryObjectStore ( args.root )
	authenticator = FixedSecretAuthenticator ( args.secret )
	try:
		trio.run ( partial ( pop3_trio.serve, args.port, store, authenticator,
			prefix = args.prefix,
			server_hostname = args.hostname,
			host = args.host,
		) )
	except PermissionError as e:
		log.error ( f'{e!r}: you must be root to bind to port {args.port}' )
		return 1
	except KeyboardInterrupt:
		log.info ( 'interrupted, shutting down' )
	return 0


if __name__ == '__main__':
	sys.exit ( main() )
