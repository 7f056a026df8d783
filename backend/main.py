from __future__ import annotations

import logging

from gymbro.application import create_app

logging.basicConfig(level=logging.INFO)

app = create_app()
