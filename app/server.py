from __future__ import annotations

import os

from app.chat_api import create_app
from app.config import load_config

DEFAULT_CONFIG_PATH = "config.yaml"

CONFIG_PATH = os.getenv("CHATFLOW_CONFIG_PATH", DEFAULT_CONFIG_PATH)
CONFIG = load_config(CONFIG_PATH)

app = create_app(CONFIG, run_sweeper=True)
