"""
Approver roster editing.

Only the owner may change a draft, and only until it is configured. The
owner counts as a signer, so a draft with N approvers has N + 1 signers.
"""

import logging

from ..recovery.errors import invalid_request
from .models import MultiSigPolicy, WalletPolicyDraft


logger = logging.getLogger(__name__)


def _check_editable(draft: WalletPolicyDraft, initiator: str) -> None:
    if draft.configured:
        raise invalid_request("Multi-sig wallet is already configured")
    if initiator != draft.owner:
        raise invalid_request("Only the wallet owner can change approvers")


def _check_roster(approvers: list, threshold: int) -> None:
    if len(approvers) < 1:
        raise invalid_request("At least one approver is required")
    if threshold < 1:
        raise invalid_request("Threshold must be at least 1")
    if threshold > len(approvers) + 1:
        raise invalid_request("Threshold cannot be greater than total signers")


def add_approver(draft: WalletPolicyDraft, initiator: str, approver: str) -> WalletPolicyDraft:
    _check_editable(draft, initiator)
    if approver == draft.owner or approver in draft.approvers:
        raise invalid_request(f"{approver} is already a signer")

    approvers = draft.approvers + [approver]
    _check_roster(approvers, draft.threshold)
    draft.approvers = approvers
    logger.info(f"Added approver {approver} ({len(approvers)} approvers)")
    return draft


def remove_approver(draft: WalletPolicyDraft, initiator: str, approver: str) -> WalletPolicyDraft:
    _check_editable(draft, initiator)
    if approver not in draft.approvers:
        raise invalid_request(f"{approver} is not an approver")

    approvers = [a for a in draft.approvers if a != approver]
    _check_roster(approvers, draft.threshold)
    draft.approvers = approvers
    logger.info(f"Removed approver {approver} ({len(approvers)} approvers)")
    return draft


def set_threshold(draft: WalletPolicyDraft, initiator: str, threshold: int) -> WalletPolicyDraft:
    _check_editable(draft, initiator)
    if threshold < 1:
        raise invalid_request("Threshold must be at least 1")
    if threshold > draft.total_signers:
        raise invalid_request("Threshold cannot be greater than total signers")
    draft.threshold = threshold
    return draft


def configure(draft: WalletPolicyDraft) -> MultiSigPolicy:
    """Freeze the draft into a policy. The draft cannot be edited afterwards."""
    if draft.configured:
        raise invalid_request("Multi-sig wallet is already configured")
    _check_roster(draft.approvers, draft.threshold)

    policy = MultiSigPolicy.of(
        threshold=draft.threshold,
        signers=[draft.owner, *draft.approvers],
        owner=draft.owner,
    )
    draft.configured = True
    logger.info(
        f"Configured {policy.threshold}-of-{policy.total_signers} wallet for {draft.owner}"
    )
    return policy
