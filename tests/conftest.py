import json
import os
import pathlib
import pwd
import shutil
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import List

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import modnss`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from modnss.certdb import CertificateDatabase, DatabaseFormat  # noqa: E402
from modnss.certificate import CertificateInfo, parse_certificate  # noqa: E402
from modnss.errors import DatabaseError  # noqa: E402
from modnss.handles import DirectoryHandle  # noqa: E402
from modnss.identity import Identity  # noqa: E402


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "root: needs real uid/gid switching (skipped unless MODNSS_RUN_ROOT=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_root = _env_flag('MODNSS_RUN_ROOT') and os.geteuid() == 0

    for item in items:
        if 'root' in item.keywords and not run_root:
            item.add_marker(pytest.mark.skip(reason='root tests skipped; run as root with MODNSS_RUN_ROOT=1'))


# ---------------------------------------------------------------------------
# Certificates
# ---------------------------------------------------------------------------

def make_certificate_pem(common_name: str = "example.com", days: int = 90) -> bytes:
    """Self-signed EC certificate for ``common_name``."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc).replace(microsecond=0)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=days))
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM)


@pytest.fixture(scope="session")
def certificate_pem() -> bytes:
    return make_certificate_pem("example.com")


@pytest.fixture
def certificate(certificate_pem) -> CertificateInfo:
    return parse_certificate(certificate_pem, source="example.com.crt")


# ---------------------------------------------------------------------------
# File-backed certificate database
# ---------------------------------------------------------------------------

TEST_FORMAT = DatabaseFormat("test", ("cert-index", "key-index", "module-index"), "")


class IndexFileDatabase(CertificateDatabase):
    """Stores entries as a JSON list in the first index file.

    The file is rewritten in place through the directory handle, so the
    database is only ever reachable through the generation it was opened in.
    """

    def __init__(self, directory: DirectoryHandle, fmt: DatabaseFormat):
        super().__init__(directory, fmt)
        self.entries: List[dict] = []
        self.opened_as = None

    @property
    def index_name(self) -> str:
        return self.format.files[0]

    def _open_database(self) -> None:
        self.opened_as = Identity.current()
        try:
            fd = os.open(self.index_name, os.O_RDONLY | os.O_NOFOLLOW, dir_fd=self.directory.fd)
        except OSError as e:
            raise DatabaseError("Failed to open database", self.label, e) from e
        with os.fdopen(fd, "rb") as f:
            data = f.read()
        self.entries = json.loads(data) if data.strip() else []

    def _close_database(self) -> None:
        fd = os.open(self.index_name, os.O_WRONLY | os.O_TRUNC | os.O_NOFOLLOW, dir_fd=self.directory.fd)
        with os.fdopen(fd, "wb") as f:
            f.write(json.dumps(self.entries).encode("utf-8"))
            f.flush()
            os.fsync(f.fileno())

    def _list_nicknames(self) -> List[str]:
        return [e["nickname"] for e in self.entries]

    def _delete(self, nickname: str) -> None:
        for i, entry in enumerate(self.entries):
            if entry["nickname"] == nickname:
                del self.entries[i]
                return
        raise DatabaseError(f"No certificate for {nickname}", self.label)

    def _insert(self, nickname: str, certificate: CertificateInfo) -> None:
        self.entries.append({"nickname": nickname, "pem": certificate.pem.decode("ascii")})


def read_index(path: pathlib.Path) -> List[dict]:
    data = path.read_bytes()
    return json.loads(data) if data.strip() else []


@pytest.fixture
def database_factory():
    """Factory that remembers every database it handed out."""
    created: List[IndexFileDatabase] = []

    def factory(directory: DirectoryHandle, fmt: DatabaseFormat) -> IndexFileDatabase:
        db = IndexFileDatabase(directory, fmt)
        created.append(db)
        return db

    factory.created = created
    return factory


# ---------------------------------------------------------------------------
# Directory layout
# ---------------------------------------------------------------------------

OLD_GENERATION = "alias-20240101000000"
OLD_MTIME_NS = 1_000_000_000 * 10**9


@pytest.fixture
def identity() -> Identity:
    return Identity.current()


@pytest.fixture
def conf_dir(tmp_path) -> pathlib.Path:
    """
    conf/
    ├── alias -> alias-20240101000000
    └── alias-20240101000000/
        ├── cert-index     [{"nickname": "example.com", ...}, {"nickname": "other.org", ...}]
        ├── key-index
        ├── module-index
        ├── readme.txt
        ├── current -> readme.txt
        └── sub/file
    """
    conf = tmp_path / "conf"
    old = conf / OLD_GENERATION
    (old / "sub").mkdir(parents=True)

    (old / "cert-index").write_text(json.dumps([
        {"nickname": "example.com", "pem": "old"},
        {"nickname": "other.org", "pem": "other"},
    ]))
    (old / "key-index").write_bytes(b"keys")
    (old / "module-index").write_bytes(b"")
    (old / "readme.txt").write_text("hello\n")
    (old / "sub" / "file").write_bytes(b"\x00\x01nested")
    os.symlink("readme.txt", old / "current")

    os.chmod(old / "readme.txt", 0o640)
    os.chmod(old / "sub" / "file", 0o604)
    for p in (old / "cert-index", old / "key-index", old / "module-index",
              old / "readme.txt", old / "sub" / "file", old / "sub"):
        os.utime(p, ns=(OLD_MTIME_NS, OLD_MTIME_NS))

    os.symlink(OLD_GENERATION, conf / "alias")
    return conf


@pytest.fixture
def conf(conf_dir):
    with DirectoryHandle.open_path(str(conf_dir)) as handle:
        yield handle


# ---------------------------------------------------------------------------
# Stand-in NSS tools and an unprivileged principal
# ---------------------------------------------------------------------------

# Nicknames are kept one per line in the certificate index file of the
# working directory.  Changes are staged in a journal file beside it, the
# way an SQLite database does, so the directory must be writable.  "-p"
# keeps the shell from resetting a switched effective uid.
NSS_TOOL_STUB = r"""#!/bin/sh -p
case "${0##*/}" in
modutil)
    echo "  Slot: NSS User Private Key and Certificate Services"
    echo "  Login Type: Public (no pin required)"
    exit 0
    ;;
esac

case "$3" in
sql:*) index=cert9.db ;;
*) index=cert8.db ;;
esac
journal="$index-journal"

case "$1" in
-L)
    echo "Certificate Nickname                     Trust Attributes"
    echo "                                         SSL,S/MIME,JAR/XPI"
    echo
    while IFS= read -r name; do
        echo "$name                     ,,"
    done < "$index"
    ;;
-D)
    awk -v n="$5" '!done && $0 == n { done = 1; next } { print }' "$index" > "$journal" || exit 1
    cat "$journal" > "$index" || exit 1
    rm -f "$journal"
    ;;
-A)
    cat > /dev/null
    cp "$index" "$journal" || exit 1
    echo "$5" >> "$journal"
    cat "$journal" > "$index" || exit 1
    rm -f "$journal"
    ;;
*)
    echo "unsupported: $*" >&2
    exit 1
    ;;
esac
"""


@pytest.fixture
def nss_tools():
    """Executable certutil/modutil stand-ins in a directory anyone can reach."""
    directory = tempfile.mkdtemp(prefix="modnss-tools-")
    os.chmod(directory, 0o755)
    certutil = os.path.join(directory, "certutil")
    with open(certutil, "w") as f:
        f.write(NSS_TOOL_STUB)
    os.chmod(certutil, 0o755)
    modutil = os.path.join(directory, "modutil")
    os.symlink("certutil", modutil)
    try:
        yield SimpleNamespace(certutil=certutil, modutil=modutil)
    finally:
        shutil.rmtree(directory)


@pytest.fixture
def nobody() -> Identity:
    pw = pwd.getpwnam("nobody")
    return Identity(pw.pw_uid, pw.pw_gid, pw.pw_name)


@pytest.fixture
def private_cwd(tmp_path, monkeypatch) -> pathlib.Path:
    """Working directory only its (privileged) owner can search."""
    private = tmp_path / "private"
    private.mkdir()
    os.chmod(private, 0o700)
    monkeypatch.chdir(private)
    return private


def fixed_clock(year=2024, month=6, day=1, hour=12, minute=0, second=0):
    moment = datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)
    return lambda: moment
