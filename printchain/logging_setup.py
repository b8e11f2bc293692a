from __future__ import annotations

import logging

from printchain.config import settings

LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s %(message)s'


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(level=(level or settings.log_level).upper(), format=LOG_FORMAT)
    logging.getLogger('printchain.security').setLevel(logging.WARNING)
