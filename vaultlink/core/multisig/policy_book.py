from typing import Dict, List, Optional

from .models import MultiSigPolicy


class PolicyBook:
    """Signing account -> threshold policy. Accounts without an entry sign alone."""

    def __init__(self):
        self._policies: Dict[str, MultiSigPolicy] = {}

    def register(self, account: str, policy: MultiSigPolicy) -> None:
        self._policies[account] = policy

    def unregister(self, account: str) -> bool:
        return self._policies.pop(account, None) is not None

    def get(self, account: Optional[str]) -> Optional[MultiSigPolicy]:
        if account is None:
            return None
        return self._policies.get(account)

    def accounts(self) -> List[str]:
        return sorted(self._policies)

    def clear(self) -> None:
        self._policies.clear()

    def __contains__(self, account: str) -> bool:
        return account in self._policies

    def __len__(self) -> int:
        return len(self._policies)
