import logging

from buildmatrix.config import config

logging.basicConfig(
    format='%(asctime)s [%(name)s] %(levelname)s: %(message)s',
    level=logging.INFO,
)
if config.debug:
    logging.getLogger('buildmatrix.sandbox').setLevel(logging.DEBUG)
    logging.getLogger('buildmatrix.utils').setLevel(logging.DEBUG)
    logging.getLogger('buildmatrix.runner').setLevel(logging.DEBUG)
