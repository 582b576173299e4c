"""Environment-file reconciliation.

The file is line oriented ``KEY=VALUE``. Comments, blank lines and keys the
reconciler does not manage are kept exactly where they are.
"""
from __future__ import annotations

import os
import re
import tempfile
from dataclasses import dataclass, field

from .errors import ConfigError


REQUIRED_KEYS = ("DJANGO_SECRET_KEY", "DJANGO_ALLOWED_HOSTS", "DATABASE_URL")

PLACEHOLDERS = frozenset(
    {
        "",
        "CHANGE_ME",
        "your-super-secret-key",
        "your-domain.com",
        "your-ec2-dns-or-ip",
        "your-strong-password",
    }
)

KEY_RE = re.compile(r"^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)\s*=(.*)$")

SAMPLE_ENV = """\
# Application
DJANGO_SECRET_KEY=CHANGE_ME
DJANGO_ALLOWED_HOSTS=localhost,127.0.0.1

# Persistence locator (file path or connection string)
DATABASE_URL=sqlite:////data/db.sqlite3
"""


def _is_placeholder(value: str) -> bool:
    if value.strip() in PLACEHOLDERS:
        return True
    # Any single list item left at a sample value also counts.
    return any(part.strip() in PLACEHOLDERS - {""} for part in value.split(","))


@dataclass
class EnvironmentConfig:
    lines: list[str] = field(default_factory=list)

    @classmethod
    def parse(cls, text: str) -> EnvironmentConfig:
        return cls(lines=text.splitlines())

    @classmethod
    def load(cls, path: str) -> EnvironmentConfig:
        with open(path, encoding="utf-8") as f:
            return cls.parse(f.read())

    def _index(self, key: str) -> list[int]:
        out = []
        for i, line in enumerate(self.lines):
            m = KEY_RE.match(line)
            if m and m.group(1) == key:
                out.append(i)
        return out

    def get(self, key: str) -> str | None:
        idx = self._index(key)
        if not idx:
            return None
        return KEY_RE.match(self.lines[idx[0]]).group(2).strip()

    def keys(self) -> list[str]:
        out = []
        for line in self.lines:
            m = KEY_RE.match(line)
            if m and m.group(1) not in out:
                out.append(m.group(1))
        return out

    def as_dict(self) -> dict[str, str]:
        return {k: self.get(k) or "" for k in self.keys()}

    def set(self, key: str, value: str) -> None:
        """Replace the first definition of ``key`` in place, or append it."""
        line = f"{key}={value}"
        idx = self._index(key)
        if not idx:
            self.lines.append(line)
            return
        self.lines[idx[0]] = line
        for i in reversed(idx[1:]):
            del self.lines[i]

    def setdefault(self, key: str, value: str) -> None:
        if self.get(key) is None:
            self.set(key, value)

    def render(self) -> str:
        return "\n".join(self.lines) + "\n"

    def violations(self, required: tuple[str, ...] = REQUIRED_KEYS) -> list[str]:
        bad = []
        for key in required:
            value = self.get(key)
            if value is None or _is_placeholder(value):
                bad.append(key)
        return bad

    def check_required(self, required: tuple[str, ...] = REQUIRED_KEYS) -> None:
        bad = self.violations(required)
        if bad:
            raise ConfigError(bad)

    def write(self, path: str) -> bool:
        """Atomically replace ``path``; returns False when content is unchanged."""
        text = self.render()
        try:
            with open(path, encoding="utf-8") as f:
                if f.read() == text:
                    return False
        except FileNotFoundError:
            pass
        atomic_write(path, text.encode("utf-8"), mode=0o600)
        return True


def atomic_write(path: str, data: bytes, mode: int = 0o644) -> None:
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".tmp-", dir=directory)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.remove(tmp)
        except FileNotFoundError:
            pass
        raise


def plan(
    path: str,
    required_defaults: dict[str, str],
    computed_overrides: dict[str, str],
    template: str | None = None,
) -> EnvironmentConfig:
    """Compute the reconciled config without touching the disk.

    ``required_defaults`` fill keys that are absent (or empty). On a fresh file
    they also replace sample placeholders, so a generated secret wins over the
    template's ``CHANGE_ME``; an operator's existing file is never second-guessed.
    ``computed_overrides`` always win.
    """
    fresh = not os.path.exists(path)
    if not fresh:
        cfg = EnvironmentConfig.load(path)
    elif template and os.path.exists(template):
        cfg = EnvironmentConfig.load(template)
    else:
        cfg = EnvironmentConfig.parse(SAMPLE_ENV)

    for key, value in required_defaults.items():
        current = cfg.get(key)
        if current is None or (value and (current.strip() == "" or (fresh and _is_placeholder(current)))):
            cfg.set(key, value)
    for key, value in computed_overrides.items():
        cfg.set(key, value)
    return cfg


def reconcile(
    path: str,
    required_defaults: dict[str, str],
    computed_overrides: dict[str, str],
    template: str | None = None,
) -> EnvironmentConfig:
    cfg = plan(path, required_defaults, computed_overrides, template=template)
    cfg.write(path)
    return cfg
