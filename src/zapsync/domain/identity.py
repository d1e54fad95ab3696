"""Identity resolution - raw gateway addresses to one canonical address.

The gateway sometimes identifies a correspondent by phone-derived JID,
sometimes by an opaque @lid, and sometimes sends both in one key
(remoteJid + remoteJidAlt). Every time both appear together the pair is
memoized in the alias table; later alias-only events resolve through a
single lookup. Without that table the same person fragments into
several conversations.
"""

from __future__ import annotations

from zapsync.observability.logging import get_logger
from zapsync.observability.redaction import mask_address, safe_log_context

from .addresses import Address, canonical_form, parse_address
from .errors import ResolutionAmbiguity
from .models import AliasLink
from .ports import AliasStore

logger = get_logger(__name__)


class IdentityResolver:
    """Resolve raw addresses against the alias table. Never raises."""

    def __init__(self, aliases: AliasStore, default_area_code: str | None = None) -> None:
        self._aliases = aliases
        self._default_area_code = default_area_code

    def _canonical(self, address: Address) -> str:
        return canonical_form(address, self._default_area_code)

    def _pair(
        self, primary: Address, secondary: Address | None
    ) -> tuple[Address | None, Address | None]:
        """Split an address pair into (alias, stable).

        Raises:
            ResolutionAmbiguity: both sides are stable numbers that do not
                normalize to the same value, or two different aliases.
        """
        alias: Address | None = None
        stable: Address | None = None
        for address in (primary, secondary):
            if address is None:
                continue
            if address.is_alias:
                if alias is not None and alias.user != address.user:
                    raise ResolutionAmbiguity("two different alias addresses")
                alias = alias or address
            elif address.is_stable:
                if stable is not None and self._canonical(stable) != self._canonical(address):
                    raise ResolutionAmbiguity("two different stable addresses")
                stable = stable or address
        return alias, stable

    def _split(
        self, instance_id: str, raw: str, raw_alias: str | None
    ) -> tuple[Address, Address | None, Address | None]:
        primary = parse_address(raw)
        secondary = parse_address(raw_alias) if raw_alias else None
        try:
            alias, stable = self._pair(primary, secondary)
        except ResolutionAmbiguity as e:
            logger.warning(
                "address pair ambiguous - using primary address",
                extra={
                    "extra_fields": safe_log_context(
                        instance_id=instance_id,
                        reason=str(e),
                        primary=mask_address(raw),
                        secondary=mask_address(raw_alias),
                    )
                },
            )
            alias = primary if primary.is_alias else None
            stable = primary if primary.is_stable else None
        return primary, alias, stable

    def resolve(self, instance_id: str, raw: str, raw_alias: str | None = None) -> str:
        """Map a raw address (and optional alias) to its canonical address.

        Order: a stable address in the pair wins; otherwise a known alias
        mapping substitutes the stable address; otherwise the alias is used
        as-is. Stable numbers go through Brazilian normalization.

        Args:
            instance_id: Gateway instance the event came from.
            raw: Primary raw address (remoteJid / participant).
            raw_alias: Alternate raw address (remoteJidAlt / participantAlt).

        Returns:
            Canonical address string.
        """
        primary, alias, stable = self._split(instance_id, raw, raw_alias)

        if primary.is_group:
            return self._canonical(primary)
        if stable is not None:
            return self._canonical(stable)
        if alias is not None:
            alias_key = self._canonical(alias)
            return self._aliases.get_alias(instance_id, alias_key) or alias_key
        return self._canonical(primary)

    def learn(self, instance_id: str, raw: str | None, raw_alias: str | None) -> AliasLink | None:
        """Record alias -> stable when both appear in the same pair.

        Returns:
            AliasLink when the mapping is new or changed, else None.
        """
        if not raw or not raw_alias:
            return None

        _, alias, stable = self._split(instance_id, raw, raw_alias)
        if alias is None or stable is None:
            return None

        alias_key = self._canonical(alias)
        stable_key = self._canonical(stable)
        if self._aliases.get_alias(instance_id, alias_key) == stable_key:
            return None

        previous = self._aliases.put_alias(instance_id, alias_key, stable_key)
        logger.info(
            "alias linked to stable address",
            extra={
                "extra_fields": safe_log_context(
                    instance_id=instance_id,
                    alias=mask_address(alias_key),
                    stable=mask_address(stable_key),
                    remapped=previous is not None,
                )
            },
        )
        return AliasLink(
            instance_id=instance_id, alias=alias_key, stable=stable_key, previous=previous
        )

    def lock_keys(self, instance_id: str, raw: str, raw_alias: str | None = None) -> set[str]:
        """Every canonical address this pair may touch.

        Taken before learning so the exclusion scope also covers the alias
        conversation a merge would remove.
        """
        primary, alias, stable = self._split(instance_id, raw, raw_alias)
        keys = {self.resolve(instance_id, raw, raw_alias)}
        for address in (primary, alias, stable):
            if address is not None:
                keys.add(self._canonical(address))
        return keys
