"""Output tree layout for one name+version target."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

# Install-prefix directories exposed to descriptors as $BINDIR, $SYSCONFDIR, ...
INSTALL_DIRS: dict[str, str] = {
    "PREFIX": "/usr",
    "BINDIR": "/usr/bin",
    "SBINDIR": "/usr/sbin",
    "LIBDIR": "/usr/lib",
    "DATADIR": "/usr/share",
    "DOCDIR": "/usr/share/doc",
    "LICENSEDIR": "/usr/share/licenses",
    "SYSCONFDIR": "/etc",
    "LOCALSTATEDIR": "/var",
    "SHAREDSTATEDIR": "/var/lib",
}


@dataclass(frozen=True, slots=True)
class BuildLayout:
    output_root: Path
    name: str
    version: str

    @property
    def target(self) -> str:
        return f"{self.name}-{self.version}"

    @property
    def sources_dir(self) -> Path:
        return self.output_root / "sources"

    @property
    def artifacts_dir(self) -> Path:
        return self.output_root / "artifacts"

    @property
    def locks_dir(self) -> Path:
        return self.output_root / "locks"

    @property
    def work_root(self) -> Path:
        return self.output_root / self.target

    @property
    def build_dir(self) -> Path:
        return self.work_root / "build"

    @property
    def source_dir(self) -> Path:
        """Unpacked source tree; build and install commands run here."""
        return self.build_dir / self.target

    @property
    def staging_root(self) -> Path:
        return self.work_root / "staging"

    @property
    def cache_dir(self) -> Path:
        return self.work_root / "cache"

    @property
    def runs_dir(self) -> Path:
        return self.work_root / "runs"

    @property
    def archive_path(self) -> Path:
        return self.sources_dir / f"{self.target}.tar.gz"

    @property
    def lock_path(self) -> Path:
        return self.locks_dir / f"{self.target}.lock"

    def run_dir(self, run_id: str) -> Path:
        return self.runs_dir / run_id

    def staged(self, install_path: str) -> Path:
        return self.staging_root / install_path.lstrip("/")

    def escapes_staging(self, install_path: str) -> bool:
        """True when a parent directory of the staged path resolves outside staging."""
        parent = self.staged(install_path).parent.resolve()
        return not parent.is_relative_to(self.staging_root.resolve())

    def prepare(self) -> None:
        """Create every directory the archiver and packager expect to exist."""
        for directory in (self.sources_dir, self.artifacts_dir, self.locks_dir, self.runs_dir):
            directory.mkdir(parents=True, exist_ok=True)
