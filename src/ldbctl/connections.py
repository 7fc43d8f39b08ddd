"""Client connection strings derived from stored instance records."""
from __future__ import annotations

from urllib.parse import quote

from .models import DatabaseType, Instance

LOOPBACK = "127.0.0.1"


def database_name_for(name: str) -> str:
    """Return the default database name for an instance called *name*."""
    return name.lower().replace(" ", "_")


def connection_string(instance: Instance) -> str:
    """Return the client URI for *instance*.

    The password is percent-encoded so reserved characters survive URI parsing.
    """
    password = quote(instance.root_password, safe="")
    database = quote(database_name_for(instance.name), safe="")
    address = f"{LOOPBACK}:{instance.port}"
    if instance.database_type is DatabaseType.POSTGRESQL:
        return f"postgresql://postgres:{password}@{address}/{database}"
    if instance.database_type is DatabaseType.REDIS:
        return f"redis://:{password}@{address}"
    if instance.database_type is DatabaseType.MYSQL:
        return f"mysql://root:{password}@{address}/{database}"
    return f"mongodb://root:{password}@{address}/{database}?authSource=admin"


__all__ = ["LOOPBACK", "connection_string", "database_name_for"]
