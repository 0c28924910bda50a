from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ordersync.config import Settings, settings as default_settings
from ordersync.utils.logger import logger, mask_secret


@dataclass(frozen=True)
class DeliveryCredential:
    name: str
    api_key: str
    stores: List[str] = field(default_factory=list)

    def __repr__(self) -> str:
        return f"DeliveryCredential(name={self.name!r}, api_key={mask_secret(self.api_key)!r}, stores={self.stores!r})"


class DeliveryCredentialMap:
    """Resolves which logistics API credential to use for a store.

    Order of precedence: the store's explicit ``delivery_credential`` name,
    then a credential whose ``stores`` list contains the store identifier,
    then the default (primary) credential.
    """

    def __init__(self, credentials: List[DeliveryCredential], default_name: Optional[str] = None):
        self._by_name: Dict[str, DeliveryCredential] = {c.name: c for c in credentials}
        self._by_store: Dict[str, DeliveryCredential] = {}
        for credential in credentials:
            for store in credential.stores:
                self._by_store.setdefault(store, credential)
        if default_name is None and credentials:
            default_name = credentials[0].name
        self.default_name = default_name

    def __len__(self) -> int:
        return len(self._by_name)

    def names(self) -> List[str]:
        return sorted(self._by_name)

    def for_store(self, store_identifier: str, explicit_name: Optional[str] = None) -> Optional[DeliveryCredential]:
        if explicit_name:
            credential = self._by_name.get(explicit_name)
            if credential:
                return credential
            logger.warning(
                "Delivery credential %r configured for store %s is unknown; falling back",
                explicit_name,
                store_identifier,
            )
        credential = self._by_store.get(store_identifier)
        if credential:
            return credential
        if self.default_name:
            return self._by_name.get(self.default_name)
        return None


def load_credential_map(cfg: Optional[Settings] = None) -> DeliveryCredentialMap:
    """Build the credential map from DELIVERY_CREDENTIALS and numbered env keys."""
    cfg = cfg or default_settings
    credentials: List[DeliveryCredential] = []
    seen = set()

    for name, entry in (cfg.DELIVERY_CREDENTIALS or {}).items():
        api_key = (entry or {}).get("api_key")
        if not api_key:
            continue
        stores = [str(s).strip() for s in (entry.get("stores") or []) if str(s).strip()]
        credentials.append(DeliveryCredential(name=name, api_key=api_key, stores=stores))
        seen.add(name)

    for entry in cfg.numbered_delivery_keys():
        if entry["name"] in seen:
            continue
        credentials.append(
            DeliveryCredential(name=entry["name"], api_key=entry["api_key"], stores=list(entry["stores"]))
        )
        seen.add(entry["name"])

    return DeliveryCredentialMap(credentials, default_name=cfg.DELIVERY_DEFAULT_CREDENTIAL)
