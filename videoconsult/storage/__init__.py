"""Storage module: durable video session records keyed by appointment."""

from videoconsult.storage.sqlite import SQLiteSessionStore


def create_session_store(settings):
    """
    Build the session store selected by ``settings.store_backend``.

    Returns:
        SQLiteSessionStore or RedisSessionStore
    """
    backend = settings.store_backend.lower().strip()

    if backend == "sqlite":
        return SQLiteSessionStore(db_path=settings.sqlite_path)

    elif backend == "redis":
        from videoconsult.storage.redis import RedisSessionStore
        return RedisSessionStore(url=settings.redis_url)

    raise ValueError(f"Unknown session store backend: {settings.store_backend}")


__all__ = [
    "SQLiteSessionStore",
    "create_session_store",
]
