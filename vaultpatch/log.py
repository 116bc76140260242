"""Tagged logger shared by every stage."""

import logging

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

_log = logging.getLogger("vaultpatch")


def setup(level="INFO") -> None:
    logging.basicConfig(
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        level=level.upper() if isinstance(level, str) else level
    )


def info(m):  _log.info(m)
def ok(m):    _log.log(SUCCESS, m)
def warn(m):  _log.warning(m)
def err(m):   _log.error(m)
