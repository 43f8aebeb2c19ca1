from .database import engine, AsyncSessionFactory, get_session, session_scope

__all__ = [
    "engine",
    "AsyncSessionFactory",
    "get_session",
    "session_scope",
]
