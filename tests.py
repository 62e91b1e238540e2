# coverage run --branch --source blobpop tests.py && coverage report -m

import logging
import pathlib
import sys
import unittest

logging.basicConfig (
	stream = sys.stdout,
	#level = logging.DEBUG,
	format = (
		#'%(asctime)s '
		'[%(name)s %(levelname)s] '
		'%(message)s'
	),
)

here = pathlib.Path ( __file__ ).parent.absolute()
sys.path.insert ( 0, str ( here ) )

loader = unittest.TestLoader()
suite = loader.discover ( str ( here / 'tests' ), pattern = '*_test.py', top_level_dir = str ( here ) )

result = unittest.TextTestRunner ( verbosity = 1, failfast = True ).run ( suite )
sys.exit ( 0 if result.wasSuccessful() else 1 )
