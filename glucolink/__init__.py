"""Glucolink: personal LibreView glucose sync core.

Authenticates against LibreView (LibreLinkUp), polls for new sensor readings,
persists them locally and derives trends and statistics for thin front-ends.

Subpackages:
    libreview/ — Upstream client, token cache, credential store, payload parsing
    store/     — SQLite reading store (readings, patient profile, insulin shots)
    sync/      — Refresh engine, background poller, dedup helpers
    routers/   — FastAPI query surface consumed by front-ends
    models/    — Pydantic API schemas

Core modules:
    config          — Environment settings (pydantic-settings)
    config_loader   — Load/validate/hot-reload monitoring_config.yaml
    derived_metrics — Range status, trend, time-bucket averaging, statistics
    export          — Medical export document
"""

__version__ = "0.1.0"
