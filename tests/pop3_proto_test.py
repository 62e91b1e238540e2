# python imports:
import contextlib
import datetime
import logging
from pathlib import Path
import sys
from typing import Dict, Iterator, List, Optional as Opt, Tuple
import unittest

if __name__ == '__main__': # pragma: no cover
	sys.path.append ( str ( Path ( __file__ ).parent.parent.absolute() ) )

# blobpop imports:
from blobpop import pop3_proto as proto
from blobpop.maildrop import ObjectInfo
from blobpop.util import s2b

logger = logging.getLogger ( __name__ )

T0 = datetime.datetime ( 2021, 6, 1, tzinfo = datetime.timezone.utc )

def minutes ( n: int ) -> datetime.datetime:
	return T0 + datetime.timedelta ( minutes = n )


@contextlib.contextmanager
def quiet_logging ( quiet: bool = True ) -> Iterator[None]:
	try:
		if quiet:
			logging.disable ( logging.CRITICAL )
		yield None
	finally:
		if quiet:
			logging.disable ( logging.NOTSET )


class Harness:
	'''
	services the events of a sans-io pop3_proto.Server synchronously
	'''
	secret = 'tanstaaf'

	def __init__ ( self, objects: Dict[str,Tuple[bytes,datetime.datetime]], prefix: str = 'inbox/' ) -> None:
		self.objects = objects
		self.srv = proto.Server ( 'milliways.local', prefix = prefix, peer = ( '127.0.0.1', 40110 ) )
		self.list_calls: List[str] = []
		self.get_calls: List[str] = []
		self.fail_list = False
		self.fail_get = False
		self.fail_auth = False
		self.closed = 0
		self.greeting = b''.join ( self._drain ( self.srv.startup() ) )

	def _drain ( self, events: Iterator[proto.Event] ) -> Iterator[bytes]:
		for event in events:
			try:
				if isinstance ( event, proto.SendDataEvent ):
					yield b''.join ( event.chunks )
				elif isinstance ( event, proto.GreetingAcceptEvent ):
					event.accept()
				elif isinstance ( event, proto.UserPassEvent ):
					if self.fail_auth:
						raise RuntimeError ( 'directory unreachable' )
					if event.pwd == self.secret:
						event.accept()
					else:
						event.reject()
				elif isinstance ( event, proto.ListObjectsEvent ):
					self.list_calls.append ( event.prefix )
					if self.fail_list:
						raise OSError ( 'access denied' )
					event.accept ( [
						ObjectInfo ( key, len ( data ), last_modified )
						for key, ( data, last_modified ) in sorted ( self.objects.items() )
						if key.startswith ( event.prefix )
					] )
				elif isinstance ( event, proto.GetObjectEvent ):
					self.get_calls.append ( event.key )
					if self.fail_get:
						raise OSError ( 'connection reset' )
					event.accept ( self.objects[event.key][0] )
				else: # pragma: no cover
					raise AssertionError ( f'unexpected {event=}' )
			except Exception:
				event.exc_info = sys.exc_info()

	def send ( self, line: str ) -> bytes:
		out: List[bytes] = []
		try:
			for chunk in self._drain ( self.srv.receive ( s2b ( f'{line}\r\n', 'utf-8' ) ) ):
				out.append ( chunk )
		except proto.Closed:
			self.closed += 1
		return b''.join ( out )

	def login ( self ) -> bytes:
		self.send ( 'USER mrose' )
		return self.send ( f'PASS {self.secret}' )


def two_messages() -> Dict[str,Tuple[bytes,datetime.datetime]]:
	# a is newer than b so listing order differs from key order
	return {
		'inbox/b': ( b'Subject: b\r\n\r\nbody\r\nof b\r\n' + b'x' * 3, minutes ( 1 ) ),
		'inbox/a': ( b'Subject: a\r\n\r\n', minutes ( 2 ) ),
	}


class Tests ( unittest.TestCase ):
	def test_parse_command ( self ) -> None:
		test = self
		test.assertEqual ( proto.parse_command ( b'\r\n' ), None )
		test.assertEqual ( proto.parse_command ( b'   \r' ), None )
		test.assertEqual ( proto.parse_command ( b'' ), None )
		test.assertEqual ( proto.parse_command ( b'stat' ), proto.Command ( 'STAT', '' ) )
		test.assertEqual ( proto.parse_command ( b'top  1   10\r\n' ), proto.Command ( 'TOP', '1   10' ) )
		test.assertEqual ( proto.parse_command ( b'PASS\tsecret word\r' ), proto.Command ( 'PASS', 'secret word' ) )
		test.assertEqual ( proto.parse_command ( b'XYZZY plugh\n' ), proto.Command ( 'XYZZY', 'plugh' ) )

	def test_greeting_and_blank_lines ( self ) -> None:
		test = self
		h = Harness ( two_messages() )
		test.assertEqual ( h.greeting, b'+OK POP3 server ready\r\n' )
		test.assertEqual ( h.send ( '' ), b'' )
		test.assertEqual ( h.send ( '   ' ), b'' )
		test.assertEqual ( h.send ( 'FROB' ), b'-ERR Command not recognized\r\n' )
		test.assertEqual ( h.send ( 'noop' ), b'+OK\r\n' )

	def test_must_authenticate ( self ) -> None:
		test = self
		h = Harness ( two_messages() )
		for line in ( 'STAT', 'LIST', 'LIST 1', 'UIDL', 'UIDL 1', 'TOP 1 0', 'RETR 1', 'DELE 1', 'RSET' ):
			test.assertEqual ( h.send ( line ), b'-ERR Must authenticate first\r\n', line )
		test.assertEqual ( h.send ( 'USER mrose' ), b'+OK user accepted\r\n' )
		test.assertEqual ( h.send ( 'PASS wrong' ), b'-ERR pass denied\r\n' )
		test.assertEqual ( h.srv.username, 'mrose' ) # identity survives a bad PASS
		for line in ( 'STAT', 'RETR 1' ):
			test.assertEqual ( h.send ( line ), b'-ERR Must authenticate first\r\n', line )
		test.assertEqual ( h.list_calls, [] )
		test.assertEqual ( h.get_calls, [] )
		test.assertIs ( h.srv.state, proto.SessionState.UNAUTHENTICATED )

	def test_user_pass ( self ) -> None:
		test = self
		h = Harness ( two_messages() )
		test.assertEqual ( h.send ( 'PASS tanstaaf' ), b'-ERR no username given\r\n' )
		test.assertEqual ( h.send ( 'USER' ), b'-ERR no username given\r\n' )
		test.assertEqual ( h.login(), b'+OK maildrop has 2 messages (43 octets)\r\n' )
		test.assertIs ( h.srv.state, proto.SessionState.AUTHENTICATED )
		test.assertEqual ( h.list_calls, [ 'inbox/' ] )
		test.assertEqual ( h.send ( 'PASS tanstaaf' ), b'-ERR already authenticated\r\n' )

		# same identity again changes nothing
		test.assertEqual ( h.send ( 'USER mrose' ), b'+OK user accepted\r\n' )
		test.assertEqual ( h.send ( 'STAT' ), b'+OK 2 43\r\n' )

		# a different identity drops the session back to the authorization state
		test.assertEqual ( h.send ( 'RETR 1' )[:16], b'+OK 29 octets\r\nS' )
		test.assertEqual ( h.send ( 'USER ford' ), b'+OK user accepted\r\n' )
		test.assertIs ( h.srv.state, proto.SessionState.UNAUTHENTICATED )
		test.assertIsNone ( h.srv.maildrop )
		test.assertEqual ( len ( h.srv.cache ), 0 )
		test.assertEqual ( h.send ( 'STAT' ), b'-ERR Must authenticate first\r\n' )
		test.assertEqual ( h.send ( 'PASS tanstaaf' ), b'+OK maildrop has 2 messages (43 octets)\r\n' )
		test.assertEqual ( h.list_calls, [ 'inbox/', 'inbox/' ] )

	def test_authenticator_failure ( self ) -> None:
		test = self
		h = Harness ( two_messages() )
		h.fail_auth = True
		h.send ( 'USER mrose' )
		with quiet_logging():
			test.assertEqual ( h.send ( 'PASS tanstaaf' ), b'-ERR pass denied\r\n' )
		test.assertFalse ( h.srv.authenticated )
		test.assertEqual ( h.list_calls, [] )

	def test_list_failure_is_login_failure ( self ) -> None:
		test = self
		h = Harness ( two_messages() )
		h.fail_list = True
		with quiet_logging():
			test.assertEqual ( h.login(), b'-ERR maildrop not available\r\n' )
		test.assertFalse ( h.srv.authenticated )
		test.assertIsNone ( h.srv.maildrop )
		test.assertEqual ( h.send ( 'STAT' ), b'-ERR Must authenticate first\r\n' )
		h.fail_list = False
		test.assertEqual ( h.send ( 'PASS tanstaaf' ), b'+OK maildrop has 2 messages (43 octets)\r\n' )

	def test_stat_list_uidl ( self ) -> None:
		test = self
		h = Harness ( {
			'inbox/a': ( b'x' * 10, minutes ( 1 ) ),
			'inbox/b': ( b'y' * 20, minutes ( 2 ) ),
			'inbox/AMAZON_SES_SETUP_NOTIFICATION': ( b'z' * 99, minutes ( 0 ) ),
			'outbox/c': ( b'w' * 5, minutes ( 3 ) ),
		} )
		h.login()
		test.assertEqual ( h.send ( 'STAT' ), b'+OK 2 30\r\n' )
		test.assertEqual ( h.send ( 'LIST' ), b'+OK 2 messages (30 octets)\r\n1 10\r\n2 20\r\n.\r\n' )
		test.assertEqual ( h.send ( 'LIST 2' ), b'+OK 2 20\r\n' )
		for arg in ( '3', '0', '-1', 'x', '1.5', '+1', '1_0', '\u0661', '1 2' ):
			test.assertEqual ( h.send ( f'LIST {arg}' ), b'-ERR no such message, only 2 messages in maildrop\r\n', arg )
		test.assertEqual ( h.send ( 'UIDL' ), b'+OK\r\n1 a\r\n2 b\r\n.\r\n' )
		test.assertEqual ( h.send ( 'UIDL 1' ), b'+OK 1 a\r\n' )
		test.assertEqual ( h.send ( 'UIDL 3' ), b'-ERR no such message, only 2 messages in maildrop\r\n' )
		test.assertEqual ( h.get_calls, [] )

	def test_colliding_keys ( self ) -> None:
		test = self
		h = Harness ( {
			'inbox/a': ( b'x' * 3, minutes ( 1 ) ),
			'inbox//a': ( b'y' * 5, minutes ( 2 ) ),
		} )
		with quiet_logging():
			test.assertEqual ( h.login(), b'+OK maildrop has 2 messages (8 octets)\r\n' )
		test.assertEqual ( h.closed, 0 )
		test.assertEqual ( h.send ( 'UIDL' ), b'+OK\r\n1 a\r\n2 inbox//a\r\n.\r\n' )
		test.assertEqual ( h.send ( 'RETR 2' ), b'+OK 5 octets\r\nyyyyy\r\n.\r\n' )
		test.assertEqual ( h.get_calls, [ 'inbox//a' ] )

	def test_empty_maildrop ( self ) -> None:
		test = self
		h = Harness ( {} )
		test.assertEqual ( h.login(), b'+OK maildrop has 0 messages (0 octets)\r\n' )
		test.assertEqual ( h.send ( 'STAT' ), b'+OK 0 0\r\n' )
		test.assertEqual ( h.send ( 'LIST' ), b'+OK 0 messages (0 octets)\r\n.\r\n' )
		test.assertEqual ( h.send ( 'UIDL' ), b'+OK\r\n.\r\n' )
		test.assertEqual ( h.send ( 'RETR 1' ), b'-ERR no such message, only 0 messages in maildrop\r\n' )

	def test_retr_is_cached ( self ) -> None:
		test = self
		h = Harness ( two_messages() )
		h.login()
		r1 = h.send ( 'RETR 1' )
		test.assertEqual ( r1, b'+OK 29 octets\r\nSubject: b\r\n\r\nbody\r\nof b\r\nxxx\r\n.\r\n' )
		r2 = h.send ( 'RETR 1' )
		test.assertEqual ( r1, r2 )
		test.assertEqual ( h.get_calls, [ 'inbox/b' ] )
		test.assertIn ( 'b', h.srv.cache )

		# message ending in CRLF doesn't get a second one
		test.assertEqual ( h.send ( 'RETR 2' ), b'+OK 14 octets\r\nSubject: a\r\n\r\n.\r\n' )
		test.assertEqual ( h.get_calls, [ 'inbox/b', 'inbox/a' ] )

	def test_retr_dot_stuffing ( self ) -> None:
		test = self
		h = Harness ( { 'inbox/dots': ( b'.leading\r\n\r\n.\r\n..two\r\nend.', minutes ( 1 ) ) } )
		h.login()
		test.assertEqual (
			h.send ( 'RETR 1' ),
			b'+OK 26 octets\r\n..leading\r\n\r\n..\r\n...two\r\nend.\r\n.\r\n',
		)

	def test_top ( self ) -> None:
		test = self
		h = Harness ( { 'inbox/m': ( b'From: a\r\nTo: b\r\n\r\none\r\ntwo\r\n\r\nfour\r\n', minutes ( 1 ) ) } )
		h.login()
		test.assertEqual ( h.send ( 'TOP 1 0' ), b'+OK top of message follows\r\nFrom: a\r\nTo: b\r\n\r\n.\r\n' )
		test.assertEqual ( h.send ( 'TOP 1 2' ), b'+OK top of message follows\r\nFrom: a\r\nTo: b\r\n\r\none\r\ntwo\r\n.\r\n' )
		test.assertEqual (
			h.send ( 'TOP 1 99' ),
			b'+OK top of message follows\r\nFrom: a\r\nTo: b\r\n\r\none\r\ntwo\r\n\r\nfour\r\n.\r\n',
		)
		test.assertEqual ( h.get_calls, [ 'inbox/m' ] )
		test.assertEqual ( h.send ( 'TOP 2 1' ), b'-ERR no such message, only 1 messages in maildrop\r\n' )
		test.assertEqual ( h.send ( 'TOP' ), b'-ERR no such message, only 1 messages in maildrop\r\n' )
		for arg in ( '1', '1 -1', '1 lots', '1 1_0', '1 +1', '1 \u0661' ):
			test.assertEqual ( h.send ( f'TOP {arg}' ), b'-ERR invalid line count\r\n', arg )

	def test_top_header_only ( self ) -> None:
		test = self
		h = Harness ( { 'inbox/m': ( b'Subject: x\r\n', minutes ( 1 ) ) } )
		h.login()
		test.assertEqual ( h.send ( 'TOP 1 0' ), b'+OK top of message follows\r\nSubject: x\r\n\r\n.\r\n' )
		test.assertEqual ( h.send ( 'TOP 1 3' ), b'+OK top of message follows\r\nSubject: x\r\n\r\n.\r\n' )
		test.assertEqual ( h.send ( 'RETR 1' ), b'+OK 12 octets\r\nSubject: x\r\n.\r\n' )

	def test_fetch_failure ( self ) -> None:
		test = self
		h = Harness ( two_messages() )
		h.login()
		h.fail_get = True
		with quiet_logging():
			test.assertEqual ( h.send ( 'RETR 1' ), b'-ERR unable to retrieve message 1\r\n' )
			test.assertEqual ( h.send ( 'TOP 2 0' ), b'-ERR unable to retrieve message 2\r\n' )
		test.assertEqual ( len ( h.srv.cache ), 0 )
		test.assertTrue ( h.srv.authenticated )
		h.fail_get = False
		test.assertEqual ( h.send ( 'STAT' ), b'+OK 2 43\r\n' )
		test.assertTrue ( h.send ( 'RETR 1' ).startswith ( b'+OK 29 octets\r\n' ) )
		test.assertEqual ( h.get_calls, [ 'inbox/b', 'inbox/a', 'inbox/b' ] )

	def test_abandoned_fetch_caches_nothing ( self ) -> None:
		test = self
		h = Harness ( two_messages() )
		h.login()
		events = h.srv.receive ( b'RETR 1\r\n' )
		event = next ( events )
		test.assertIsInstance ( event, proto.GetObjectEvent )
		events.close() # connection went away before the backend answered
		test.assertEqual ( len ( h.srv.cache ), 0 )

	def test_dele_rset ( self ) -> None:
		test = self
		h = Harness ( two_messages() )
		h.login()
		test.assertEqual ( h.send ( 'DELE 1' ), b'+OK message 1 deleted\r\n' )
		test.assertEqual ( h.send ( 'DELE 1' ), b'-ERR message 1 already deleted\r\n' )
		test.assertEqual ( h.send ( 'DELE 3' ), b'-ERR no such message, only 2 messages in maildrop\r\n' )
		test.assertEqual ( h.send ( 'STAT' ), b'+OK 1 14\r\n' )
		test.assertEqual ( h.send ( 'LIST' ), b'+OK 1 messages (14 octets)\r\n2 14\r\n.\r\n' )
		test.assertEqual ( h.send ( 'UIDL' ), b'+OK\r\n2 a\r\n.\r\n' )
		for line in ( 'LIST 1', 'UIDL 1', 'RETR 1', 'TOP 1 0' ):
			test.assertEqual ( h.send ( line ), b'-ERR message 1 already deleted\r\n', line )
		test.assertEqual ( h.get_calls, [] )
		test.assertEqual ( h.send ( 'RSET' ), b'+OK maildrop has 2 messages (43 octets)\r\n' )
		test.assertEqual ( h.send ( 'STAT' ), b'+OK 2 43\r\n' )

	def test_capa ( self ) -> None:
		test = self
		h = Harness ( two_messages() )
		test.assertEqual (
			h.send ( 'CAPA' ),
			b'+OK Capability list follows\r\nPIPELINING\r\nUSER\r\nUIDL\r\nTOP\r\n.\r\n',
		)
		test.assertEqual ( h.send ( 'CAPA now' ), b'-ERR No parameters allowed\r\n' )

	def test_quit ( self ) -> None:
		test = self
		h = Harness ( two_messages() )
		h.login()
		h.send ( 'RETR 1' )
		h.send ( 'DELE 2' )
		test.assertEqual ( h.send ( 'QUIT' ), b'+OK blobpop POP3 server signing off\r\n' )
		test.assertEqual ( h.closed, 1 )
		test.assertIs ( h.srv.state, proto.SessionState.CLOSED )
		test.assertEqual ( h.srv.username, '' )
		test.assertFalse ( h.srv.authenticated )
		test.assertIsNone ( h.srv.maildrop )
		test.assertEqual ( len ( h.srv.cache ), 0 )
		with test.assertRaises ( proto.Closed ):
			list ( h.srv.receive ( b'NOOP\r\n' ) )
		test.assertEqual ( h.closed, 1 )

	def test_quit_unauthenticated ( self ) -> None:
		test = self
		h = Harness ( two_messages() )
		test.assertEqual ( h.send ( 'QUIT' ), b'+OK blobpop POP3 server signing off\r\n' )
		test.assertEqual ( h.closed, 1 )

	def test_pipelining ( self ) -> None:
		test = self
		h = Harness ( two_messages() )
		out = b''.join ( h._drain ( h.srv.receive ( b'USER mrose\r\nPASS tanstaaf\nSTAT\r\n\r\nNOOP' ) ) )
		test.assertEqual ( out, b'+OK user accepted\r\n+OK maildrop has 2 messages (43 octets)\r\n+OK 2 43\r\n' )
		# the unterminated NOOP is processed at EOF
		test.assertEqual ( b''.join ( h._drain ( h.srv.receive ( b'' ) ) ), b'+OK\r\n' )
		with test.assertRaises ( proto.Closed ):
			list ( h.srv.receive ( b'' ) )

	def test_line_too_long ( self ) -> None:
		h = Harness ( two_messages() )
		with self.assertRaises ( proto.ProtocolError ):
			list ( h.srv.receive ( b'X' * h.srv._MAXLINE ) )

	def test_undecided_event_is_internal_error ( self ) -> None:
		test = self
		srv = proto.Server ( 'milliways.local' )
		events = srv.receive ( b'USER mrose\r\nPASS tanstaaf\r\n' )
		test.assertEqual ( b''.join ( next ( events ).chunks ), b'+OK user accepted\r\n' ) # type: ignore
		test.assertIsInstance ( next ( events ), proto.UserPassEvent ) # ...and nobody decides
		with test.assertRaises ( proto.InternalError ):
			with quiet_logging():
				next ( events )
		test.assertFalse ( srv.authenticated )

	def test_reprs ( self ) -> None:
		test = self
		test.assertEqual ( repr ( proto.UserPassEvent ( 'Zaphod', 'Beeblebrox' ) ), "blobpop.pop3_proto.UserPassEvent(uid='Zaphod')" ) # <-- intentionally not showing pwd
		test.assertEqual ( repr ( proto.ListObjectsEvent ( 'inbox/' ) ), "blobpop.pop3_proto.ListObjectsEvent(prefix='inbox/')" )
		test.assertEqual ( repr ( proto.GetObjectEvent ( 'inbox/a' ) ), "blobpop.pop3_proto.GetObjectEvent(key='inbox/a')" )
		test.assertEqual (
			repr ( proto.GreetingAcceptEvent() ),
			"blobpop.pop3_proto.GreetingAcceptEvent(_acceptance=None, _message='Too busy to accept mail right now')",
		)
		evt = proto.UserPassEvent ( 'ford', 'prefect' )
		with quiet_logging():
			evt.reject ( 'no\r\nway' ) # <-- not valid ( contains a CRLF )
		test.assertEqual ( evt._accepted(), ( False, proto.UserPassEvent.error_message ) )
		evt.reject ( 'account locked' )
		test.assertEqual ( evt._accepted(), ( False, 'account locked' ) )

if __name__ == '__main__':
	logging.basicConfig ( level = logging.DEBUG )
	unittest.main()
