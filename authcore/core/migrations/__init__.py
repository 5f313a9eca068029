"""SQLite schema migrations for runtime auth state."""

from authcore.core.migrations.runner import MIGRATIONS_DIR, apply_migrations, discover_migrations

__all__ = ["MIGRATIONS_DIR", "apply_migrations", "discover_migrations"]
