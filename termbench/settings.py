"""Engine settings stored in the local settings table."""

import logging

logger = logging.getLogger(__name__)

# key -> (type, default)
DEFAULTS = {
    "safety_cap": (int, 2000),
    "max_window_rows": (int, 100000),
    "fetch_batch_size": (int, 200),
    "fetch_more_rows": (int, 500),
    "cancel_timeout": (float, 5.0),
    "min_column_width": (int, 3),
    "max_column_width": (int, 40),
    "null_text": (str, "NULL"),
}


class EngineSettings:
    """Typed view of the engine settings with defaults."""

    def __init__(self, **values):
        for key, (_kind, default) in DEFAULTS.items():
            setattr(self, key, values.pop(key, default))
        if values:
            raise TypeError(f"Unknown settings: {', '.join(sorted(values))}")

    @classmethod
    def load(cls, db=None):
        """Read settings from a Database, falling back to defaults."""
        values = {}
        if db is None:
            return cls()
        for key, (kind, default) in DEFAULTS.items():
            raw = db.get_setting(key)
            if raw is None:
                continue
            try:
                value = kind(raw)
            except (TypeError, ValueError):
                logger.warning("Ignoring invalid setting %s=%r, using %r", key, raw, default)
                continue
            if kind in (int, float) and value < 0:
                logger.warning("Ignoring negative setting %s=%r, using %r", key, raw, default)
                continue
            values[key] = value
        return cls(**values)

    def save(self, db):
        for key in DEFAULTS:
            db.set_setting(key, getattr(self, key))

    def __repr__(self):
        items = ", ".join(f"{key}={getattr(self, key)!r}" for key in DEFAULTS)
        return f"EngineSettings({items})"
