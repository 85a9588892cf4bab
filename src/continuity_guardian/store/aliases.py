"""
Alias registry for story entities.

Maps alternative names ("Marcus", "Mr. Webb") to one canonical entity name
("Marcus Webb"). Only explicitly registered aliases are resolved; a name the
registry does not know is its own entity, so two spellings are never merged
by guesswork.
"""

import logging

from ..models import normalize_subject

logger = logging.getLogger("continuity-guardian")


class AliasRegistry:
    """
    Registry of entity aliases for one book.

    Attributes:
        _canonical: Mapping of normalized alias to canonical display name
    """

    def __init__(self, aliases: dict[str, str] | None = None) -> None:
        self._canonical: dict[str, str] = {}
        for alias, canonical in (aliases or {}).items():
            self.register(alias, canonical)

    def register(self, alias: str, canonical: str) -> str:
        """
        Register ``alias`` as another name for ``canonical``.

        If ``canonical`` is itself an alias, the alias is attached to the end
        of that chain. Existing aliases of ``alias`` are moved along with it.

        Args:
            alias: Alternative name
            canonical: Name the alias should resolve to

        Returns:
            The canonical display name the alias now resolves to

        Raises:
            ValueError: If the registration would create a cycle or is empty
        """
        alias = alias.strip()
        canonical = canonical.strip()
        if not alias or not canonical:
            raise ValueError("Alias and canonical name must be non-empty")

        target = self.resolve(canonical)
        alias_key = normalize_subject(alias)
        if normalize_subject(target) == alias_key:
            if normalize_subject(canonical) == alias_key:
                return target
            raise ValueError(f"Registering '{alias}' -> '{canonical}' would create an alias cycle")

        # Anything that resolved to the alias now resolves to the target
        for key, value in list(self._canonical.items()):
            if normalize_subject(value) == alias_key:
                self._canonical[key] = target
        self._canonical[alias_key] = target

        logger.debug(f"Registered alias '{alias}' -> '{target}'")
        return target

    def resolve(self, name: str) -> str:
        """Return the canonical display name for ``name`` (itself when unknown)."""
        stripped = " ".join(name.split())
        return self._canonical.get(normalize_subject(stripped), stripped)

    def is_alias(self, name: str) -> bool:
        return normalize_subject(name) in self._canonical

    def aliases_of(self, canonical: str) -> list[str]:
        """Normalized aliases that resolve to ``canonical``."""
        target = normalize_subject(self.resolve(canonical))
        return sorted(
            key for key, value in self._canonical.items()
            if normalize_subject(value) == target
        )

    def to_dict(self) -> dict[str, str]:
        return dict(self._canonical)

    def copy(self) -> "AliasRegistry":
        clone = AliasRegistry()
        clone._canonical = dict(self._canonical)
        return clone

    def __len__(self) -> int:
        return len(self._canonical)


__all__ = ["AliasRegistry"]
