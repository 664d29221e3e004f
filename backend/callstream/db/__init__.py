# Engine/session helpers live in callstream.db.session, which must not load
# before every model module has registered its table.
from .base import Base

__all__ = ["Base"]
