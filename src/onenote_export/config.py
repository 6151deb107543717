"""Configuration for the OneNote exporter."""

import os

# Output
OUTPUT_DIR = os.getenv("ONENOTE_OUTPUT_DIR", "output")
ASSET_DIR_NAME = "assets"
CONTENT_EXTENSION = ".md"
INDEX_MANIFEST_NAME = ".onenote-index.json"

# Request settings
REQUEST_TIMEOUT = float(os.getenv("ONENOTE_REQUEST_TIMEOUT", "30.0"))

# Retry settings (seconds)
MAX_ATTEMPTS = int(os.getenv("ONENOTE_MAX_ATTEMPTS", "3"))
RETRY_INITIAL_DELAY = 0.5
DOWNLOAD_RETRY_INITIAL_DELAY = 1.0
RETRY_MAX_DELAY = 5.0
RETRY_BACKOFF_MULTIPLIER = 2.0

# UI interaction timeouts (seconds)
ELEMENT_LOOKUP_TIMEOUT = 5.0
EVENT_WAIT_TIMEOUT = 15.0
DIALOG_SETTLE_DELAY = 1.0
DIALOG_CLICK_TIMEOUT = 2.0
RACE_TIMEOUT = 10.0
DOUBLE_CLICK_DELAY_MS = 200

# Cloud storage hosts that serve an interactive viewer unless forced to download
CLOUD_STORAGE_HOSTS = ("sharepoint.com", "onedrive.live.com", "1drv.ms")
FORCE_DOWNLOAD_PARAM = ("download", "1")

# Attribute the scraper tags attachment elements with
ATTACHMENT_ID_ATTRIBUTE = "data-one-attach-id"

# Cross-reference resolution
LINK_MARKER = "onenote-link"
INTERNAL_LINK_SCHEME = "onenote:"
CONTAINER_FRAGMENT_PREFIX = "section-id="
FUZZY_MIN_LENGTH = 20  # Normalized ids must be longer than this to fuzzy match
INVALID_IDS = frozenset({"", "undefined", "null"})
