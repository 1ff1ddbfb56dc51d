# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Container entry point: load settings, configure logging and serve the API."""

import uvicorn

from automation_engine.config import load_settings
from automation_engine.logger import configure_logging
from automation_engine.server import build_app

if __name__ == "__main__":
    settings = load_settings()
    configure_logging(settings.log_level)
    app = build_app(settings)
    uvicorn.run(app, host=settings.http_host, port=int(settings.http_port))
