from __future__ import annotations

# python imports:
from abc import ABCMeta, abstractmethod
import datetime
import logging
from pathlib import Path, PurePosixPath
import trio # pip install trio trio-typing
from typing import Dict, List, Optional as Opt, Tuple, Union

# blobpop imports:
from .maildrop import ObjectInfo

logger = logging.getLogger ( __name__ )


class ObjectStoreError ( Exception ):
	pass


class ObjectStore ( metaclass = ABCMeta ):
	@abstractmethod
	async def list_objects ( self, prefix: str ) -> List[ObjectInfo]:
		cls = type ( self )
		raise NotImplementedError ( f'{cls.__module__}.{cls.__name__}.list_objects()' )

	@abstractmethod
	async def get_object ( self, key: str ) -> bytes:
		cls = type ( self )
		raise NotImplementedError ( f'{cls.__module__}.{cls.__name__}.get_object()' )


def _utcnow() -> datetime.datetime:
	return datetime.datetime.now ( datetime.timezone.utc )


class MemoryObjectStore ( ObjectStore ):
	def __init__ ( self ) -> None:
		self._objects: Dict[str,Tuple[bytes,datetime.datetime]] = {}

	def put ( self, key: str, data: bytes, last_modified: Opt[datetime.datetime] = None ) -> None:
		self._objects[key] = ( bytes ( data ), last_modified or _utcnow() )

	def delete ( self, key: str ) -> None:
		del self._objects[key]

	async def list_objects ( self, prefix: str ) -> List[ObjectInfo]:
		return [
			ObjectInfo ( key, len ( data ), last_modified )
			for key, ( data, last_modified ) in sorted ( self._objects.items() )
			if key.startswith ( prefix )
		]

	async def get_object ( self, key: str ) -> bytes:
		try:
			data, _ = self._objects[key]
		except KeyError as e:
			raise ObjectStoreError ( f'no such object {key!r}' ) from e
		return data


class DirectoryObjectStore ( ObjectStore ):
	'''
	Objects are the regular files below `root`, their keys are the
	'/'-separated paths relative to it
	'''
	def __init__ ( self, root: Union[str,Path] ) -> None:
		self.root = Path ( root ).resolve()

	def _path ( self, key: str ) -> Path:
		rel = PurePosixPath ( key )
		if rel.is_absolute() or '..' in rel.parts:
			raise ObjectStoreError ( f'invalid object key {key!r}' )
		return self.root.joinpath ( *rel.parts )

	def _list_sync ( self, prefix: str ) -> List[ObjectInfo]:
		if not self.root.is_dir():
			raise ObjectStoreError ( f'object store root {str(self.root)!r} is not a directory' )
		objects: List[ObjectInfo] = []
		for path in self.root.rglob ( '*' ):
			if not path.is_file():
				continue
			key = path.relative_to ( self.root ).as_posix()
			if not key.startswith ( prefix ):
				continue
			st = path.stat()
			objects.append ( ObjectInfo (
				key,
				st.st_size,
				datetime.datetime.fromtimestamp ( st.st_mtime, datetime.timezone.utc ),
			) )
		objects.sort ( key = lambda obj: obj.key )
		return objects

	async def list_objects ( self, prefix: str ) -> List[ObjectInfo]:
		log = logger.getChild ( 'DirectoryObjectStore.list_objects' )
		try:
			objects = await trio.to_thread.run_sync ( self._list_sync, prefix )
		except OSError as e:
			raise ObjectStoreError ( f'unable to list {self.root} with {prefix=}: {e!r}' ) from e
		log.debug ( f'{len(objects)} objects under {prefix=}' )
		return objects

	async def get_object ( self, key: str ) -> bytes:
		path = trio.Path ( self._path ( key ) )
		try:
			return await path.read_bytes()
		except OSError as e:
			raise ObjectStoreError ( f'unable to read {key!r}: {e!r}' ) from e
