"""Name -> path registry shared by all runners.

One ``name path`` entry per line. The path may contain spaces, the name may not.
"""

from __future__ import annotations

from pathlib import Path

from loguru import logger

from cronrunner.core.state import atomic_write_text
from cronrunner.models import RegistryEntry


class Registry:
    """Flat-file registry of runner names."""

    def __init__(self, registry_file: Path):
        self.registry_file = Path(registry_file)

    def entries(self) -> list[RegistryEntry]:
        """All current entries, later lines winning on duplicate names."""
        if not self.registry_file.exists():
            return []

        by_name: dict[str, RegistryEntry] = {}
        for lineno, line in enumerate(self.registry_file.read_text().splitlines(), 1):
            line = line.strip()
            if not line:
                continue
            parts = line.split(maxsplit=1)
            if len(parts) != 2:
                logger.warning(f"Skipping malformed registry line {lineno}: {line!r}")
                continue
            name, path = parts
            by_name[name] = RegistryEntry(name=name, path=Path(path))

        return list(by_name.values())

    def lookup(self, name: str) -> Path | None:
        """Path registered under a name."""
        for entry in self.entries():
            if entry.name == name:
                return entry.path
        return None

    def name_for(self, path: Path) -> str | None:
        """Name registered for a path, if any."""
        path = Path(path)
        for entry in self.entries():
            if entry.path == path:
                return entry.name
        return None

    def register(self, name: str, path: Path) -> bool:
        """Map name to path.

        Returns:
            True if the registry changed
        """
        if not name or any(c.isspace() for c in name):
            raise ValueError(f"Invalid runner name: {name!r}")

        path = Path(path)
        entries = self.entries()
        existing = next((e for e in entries if e.name == name), None)

        if existing is not None and existing.path == path:
            return False

        self.registry_file.parent.mkdir(parents=True, exist_ok=True)

        if existing is None:
            with open(self.registry_file, "a") as f:
                f.write(f"{name} {path}\n")
            logger.info(f"Registered runner '{name}' -> {path}")
            return True

        # Re-registration under a new path: rewrite with the new mapping
        entries = [
            RegistryEntry(name=name, path=path) if e.name == name else e for e in entries
        ]
        atomic_write_text(
            self.registry_file, "".join(f"{e.name} {e.path}\n" for e in entries)
        )
        logger.info(f"Re-registered runner '{name}': {existing.path} -> {path}")
        return True
