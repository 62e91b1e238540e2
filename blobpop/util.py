from typing import Union

BYTES = Union[bytes,bytearray,memoryview]
bytes_types = ( bytes, bytearray, memoryview )

def b2s ( b: BYTES, encoding: str = 'us-ascii', errors: str = 'strict' ) -> str:
	return bytes ( b ).decode ( encoding, errors )

def s2b ( s: str, encoding: str = 'us-ascii', errors: str = 'strict' ) -> bytes:
	return s.encode ( encoding, errors )

def trunc ( b: BYTES, limit: int = 52 ) -> str:
	# for traffic logging, never raises on binary payloads
	s = b2s ( b, 'utf-8', 'replace' ).rstrip()
	return s if len ( s ) <= limit else f'{s[:limit]}...'
