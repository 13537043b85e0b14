"""update-mod-nss: atomic certificate database generation swap.

Installs a renewed certificate into the mod_nss certificate database
without ever exposing a half-written database to the web server.

Architecture:
    modnss/
    ├── __init__.py       # Package entry, version, public API
    ├── errors.py         # Exception hierarchy
    ├── observability.py  # Loggers, NOTICE level, stderr/JSON/syslog sinks
    ├── config.py         # YAML file + MODNSS_* environment configuration
    ├── handles.py        # Handle-relative directory access
    ├── copier.py         # Recursive copy/merge and delete
    ├── identity.py       # Principal lookup, scoped euid/egid switch
    ├── certificate.py    # PEM certificate loading
    ├── certdb.py         # Certificate database adapter (certutil)
    ├── bootstrap.py      # Generation naming, creation, seeding
    ├── swap.py           # Alias promotion by rename
    ├── orchestrator.py   # Swap state machine
    └── cli.py            # Command-line interface

Layout on disk:
    <conf_dir>/alias -> alias-20240101000000
    <conf_dir>/alias-20240101000000/{cert8.db,key3.db,secmod.db,...}

Copyright (c) 2024 Momentum. All rights reserved.
"""

__version__ = "0.1.0"

from modnss.errors import (
    MigrationError,
    FilesystemError,
    ConsistencyError,
    DatabaseError,
    CertificateError,
    InternalError,
)

from modnss.certdb import (
    CertificateDatabase,
    CertutilDatabase,
    DatabaseFormat,
    DBM_FORMAT,
    SQL_FORMAT,
    replace_certificate,
)

from modnss.orchestrator import (
    GenerationSwap,
    SwapResult,
    SwapState,
)

__all__ = [
    "__version__",
    "MigrationError",
    "FilesystemError",
    "ConsistencyError",
    "DatabaseError",
    "CertificateError",
    "InternalError",
    "CertificateDatabase",
    "CertutilDatabase",
    "DatabaseFormat",
    "DBM_FORMAT",
    "SQL_FORMAT",
    "replace_certificate",
    "GenerationSwap",
    "SwapResult",
    "SwapState",
]
