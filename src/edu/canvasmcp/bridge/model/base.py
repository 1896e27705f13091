from datetime import datetime, timezone

from sqlalchemy import DateTime, String, orm
from sqlalchemy.types import TypeDecorator
from typing_extensions import Annotated

str64 = Annotated[str, 64]
str512 = Annotated[str, 512]
str2048 = Annotated[str, 2048]
ulidpk = Annotated[str, orm.mapped_column(String(26), primary_key=True)]


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend, including SQLite."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime bound to a UTC column")
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(orm.DeclarativeBase):
    type_annotation_map = {
        str64: String(64),
        str512: String(512),
        str2048: String(2048),
        datetime: UTCDateTime(),
    }
