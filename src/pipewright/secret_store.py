# secret_store.py
from __future__ import annotations

import os
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Set

from .errors import SecretNotFound
from .settings import SECRET_PREFIX

MASK = "***"


class SecretStore:
    """
    Read-only name -> value lookup for `${{ secrets.NAME }}`.

    Populated once at run start and never logged. `repr()` lists names only.
    """

    def __init__(
        self,
        values: Optional[Mapping[str, str]] = None,
        *,
        prefix: str = SECRET_PREFIX,
        sources: Iterable[str] = (),
    ):
        self._values: Dict[str, str] = dict(values or {})
        self.prefix = prefix
        # environment variables the values were read from
        self._sources: FrozenSet[str] = frozenset(sources)

    @classmethod
    def from_environ(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        *,
        prefix: str = SECRET_PREFIX,
        names: Iterable[str] = (),
    ) -> "SecretStore":
        """
        Build a store from the process environment.

        Every `<prefix>NAME` variable becomes secret NAME. Each entry of
        `names` is read verbatim from the variable of the same name.
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, str] = {}
        sources: Set[str] = set()
        if prefix:
            for key, value in environ.items():
                if key.startswith(prefix) and len(key) > len(prefix):
                    values[key[len(prefix):]] = value
                    sources.add(key)
        for name in names:
            if name not in environ:
                raise SecretNotFound(name)
            values[name] = environ[name]
            sources.add(name)
        return cls(values, prefix=prefix, sources=sources)

    def scrub(self, environ: Mapping[str, str]) -> Dict[str, str]:
        """
        Copy of `environ` without the variables secrets come from.

        Steps only see a secret through an explicit `${{ secrets.NAME }}`.
        """
        return {
            k: v
            for k, v in environ.items()
            if k not in self._sources and not (self.prefix and k.startswith(self.prefix))
        }

    def lookup(self, name: str) -> str:
        try:
            return self._values[name]
        except KeyError:
            raise SecretNotFound(name) from None

    def names(self) -> list[str]:
        return sorted(self._values)

    def secret_values(self) -> list[str]:
        """Raw values, for building a Redactor. Never log the result."""
        return list(self._values.values())

    def __contains__(self, name: object) -> bool:
        return name in self._values

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"SecretStore(names={self.names()})"


class Redactor:
    """Masks every known secret value in a piece of text."""

    def __init__(self, secrets: Iterable[str] = ()):
        # longest first so a secret containing another is masked whole
        self._secrets = sorted({s for s in secrets if s}, key=len, reverse=True)

    def __call__(self, text: str | None) -> str:
        if not text:
            return text or ""
        for value in self._secrets:
            text = text.replace(value, MASK)
            # multi-line secrets are masked line by line as well
            if "\n" in value:
                for line in value.splitlines():
                    if line.strip():
                        text = text.replace(line, MASK)
        return text

    def __bool__(self) -> bool:
        return bool(self._secrets)
