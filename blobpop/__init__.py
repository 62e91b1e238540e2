# system imports:
import packaging.version

__version__ = packaging.version.parse ( '0.1.0' )

'''
NOTE: the transport bindings aren't automatically imported here because
most users only need one of them.

Import them directly instead:

from blobpop import pop3_trio
from blobpop.objectstore import DirectoryObjectStore
'''
