"""
Unit Tests for the Verification Request Manager

Tests cover:
1. Challenge creation, refresh and scope resolution
2. Signature approval and release (EVM and Tron)
3. Signature mismatch rejection
4. Concurrent submissions
5. Expiry, on submission and by sweep
6. Assisted verification and reviewer decisions
7. Admin overrides of signature requests
"""

import threading
import pytest
from datetime import timedelta
from decimal import Decimal

from gateway.errors import (
    AccessDenied,
    NoOpenRequest,
    NoPendingRewards,
    RequestNotFound,
    StateConflict,
    UnknownVerificationType,
    ValidationError,
)
from gateway.models import (
    AdminPaymentStatus,
    AuditAction,
    RewardDomain,
    RewardStatus,
    VerificationStatus,
)
from gateway.signatures import tron_address_from_evm


USER_ID = 42
OTHER_USER_ID = 77


def audit_actions(service, request_id):
    return [e.action_type for e in service.audit.entries_for(request_id)]


class TestCreateRequest:
    """Tests for opening a verification request."""

    def test_signature_challenge(self, service, credit):
        """A signature request carries a nonce embedded in the message to sign."""
        credit(USER_ID, "100.50")

        response = service.verification.create_request(USER_ID, "signature", "lottery_prize", ip_address="10.0.0.1")

        request = service.storage.get_request(response.request_id)
        assert response.status == VerificationStatus.PENDING
        assert response.pending_amount == Decimal("100.50")
        assert f"Nonce: {request['nonce']}" in response.message_to_sign
        assert len(request["nonce"]) == 64
        assert response.instructions is None

    def test_expiry_window(self, service, credit, clock):
        """Requests expire 24 hours after creation by default."""
        credit(USER_ID, "10")

        response = service.verification.create_request(USER_ID, "signature")

        assert (response.expires_at - clock()).total_seconds() == 24 * 3600

    def test_links_rewards_in_scope(self, service, credit):
        """Only rewards of the requested domain are linked to the request."""
        prize = credit(USER_ID, "10")
        bonus = credit(USER_ID, "0.30", domain=RewardDomain.LOTTERY_PARTICIPATION)

        response = service.verification.create_request(USER_ID, "signature", "lottery")

        assert service.storage.get_pending_reward(prize.id)["verification_request_id"] == response.request_id
        assert service.storage.get_pending_reward(bonus.id)["verification_request_id"] is None

    def test_no_pending_rewards(self, service):
        """Nothing to claim means no request."""
        with pytest.raises(NoPendingRewards):
            service.verification.create_request(USER_ID, "signature")

    def test_unknown_verification_type(self, service, credit):
        """Unrecognised scopes are rejected."""
        credit(USER_ID, "10")

        with pytest.raises(UnknownVerificationType):
            service.verification.create_request(USER_ID, "signature", "casino_jackpot")

    def test_unknown_method(self, service, credit):
        """Only signature and assisted methods exist."""
        credit(USER_ID, "10")

        with pytest.raises(ValidationError):
            service.verification.create_request(USER_ID, "email")

    def test_open_request_is_refreshed_in_place(self, service, credit):
        """Asking again while pending reuses the request with a fresh nonce."""
        credit(USER_ID, "10")

        first = service.verification.create_request(USER_ID, "signature")
        first_nonce = service.storage.get_request(first.request_id)["nonce"]
        second = service.verification.create_request(USER_ID, "signature")

        assert second.request_id == first.request_id
        assert service.storage.get_request(second.request_id)["nonce"] != first_nonce
        assert audit_actions(service, first.request_id) == [
            AuditAction.REQUEST_CREATED,
            AuditAction.REQUEST_REFRESHED,
        ]
        assert len(service.storage.find_requests(user_id=USER_ID)) == 1

    def test_verification_required_notification(self, service, credit):
        """The owner is told a verification is needed."""
        credit(USER_ID, "10")

        service.verification.create_request(USER_ID, "signature")

        kinds = [n["kind"] for n in service.notifier.sent]
        assert kinds == ["verification_required"]


class TestSignatureApproval:
    """Tests for the signature happy path."""

    def test_valid_signature_releases_rewards(self, service, credit, signer, sign):
        """A correct signature approves the request and releases escrow exactly once."""
        reward = credit(USER_ID, "100.50")
        response = service.verification.create_request(USER_ID, "signature", "lottery_prize")

        result = service.verification.submit_signature(
            USER_ID,
            sign(response.message_to_sign, signer),
            signer.address,
            "erc20",
            ip_address="10.0.0.1",
        )

        assert result.success is True
        assert result.status == VerificationStatus.APPROVED
        assert result.settlement_status == "completed"
        assert result.released_amount == Decimal("100.50")

        wallet = service.ledger.get_wallet(USER_ID)
        assert wallet.pending_balance == Decimal("0")
        assert wallet.spendable_balance == Decimal("100.50")
        assert service.storage.get_pending_reward(reward.id)["status"] == RewardStatus.CLAIMED

        request = service.storage.get_request(response.request_id)
        assert request["status"] == VerificationStatus.APPROVED
        assert request["wallet_address"] == signer.address
        assert request["verification_ip"] == "10.0.0.1"

        assert audit_actions(service, response.request_id) == [
            AuditAction.REQUEST_CREATED,
            AuditAction.SIGNATURE_SUBMITTED,
            AuditAction.APPROVED,
            AuditAction.SETTLEMENT_COMPLETED,
        ]

    def test_compliance_fee_scheduled(self, service, credit, signer, sign):
        """Five percent of the release is scheduled to the admin wallet, separate from the user's credit."""
        credit(USER_ID, "100.50")
        response = service.verification.create_request(USER_ID, "signature")

        service.verification.submit_signature(USER_ID, sign(response.message_to_sign, signer), signer.address, "erc20")

        payments = service.storage.find_admin_payments()
        assert len(payments) == 1
        assert payments[0]["amount"] == Decimal("5.02500000")
        assert payments[0]["status"] == AdminPaymentStatus.SUBMITTED
        assert service.payment_scheduler.scheduled[0]["amount"] == Decimal("5.02500000")

    def test_lowercase_address_accepted(self, service, credit, signer, sign):
        """Addresses are compared in checksum form."""
        credit(USER_ID, "10")
        response = service.verification.create_request(USER_ID, "signature")

        result = service.verification.submit_signature(
            USER_ID, sign(response.message_to_sign, signer), signer.address.lower(), "bep20",
        )

        assert result.status == VerificationStatus.APPROVED

    def test_tron_signature(self, service, credit, signer, sign):
        """Tron wallets sign with the TRON prefix and are compared as base58 addresses."""
        credit(USER_ID, "10")
        response = service.verification.create_request(USER_ID, "signature")

        result = service.verification.submit_signature(
            USER_ID,
            sign(response.message_to_sign, signer, tron=True),
            tron_address_from_evm(signer.address),
            "trc20",
        )

        assert result.status == VerificationStatus.APPROVED
        assert service.ledger.get_wallet(USER_ID).spendable_balance == Decimal("10")

    def test_evm_signature_does_not_verify_as_tron(self, service, credit, signer, sign):
        """An EIP-191 signature is not accepted for the Tron address of the same key."""
        credit(USER_ID, "10")
        response = service.verification.create_request(USER_ID, "signature")

        result = service.verification.submit_signature(
            USER_ID,
            sign(response.message_to_sign, signer),
            tron_address_from_evm(signer.address),
            "trc20",
        )

        assert result.status == VerificationStatus.REJECTED


class TestSignatureRejection:
    """Tests for signatures that do not prove ownership."""

    def test_wrong_signer_is_rejected(self, service, credit, signer, imposter, sign):
        """A signature from another key rejects the request and keeps rewards in escrow."""
        reward = credit(USER_ID, "100.50")
        response = service.verification.create_request(USER_ID, "signature")

        result = service.verification.submit_signature(
            USER_ID, sign(response.message_to_sign, imposter), signer.address, "erc20",
        )

        assert result.success is False
        assert result.status == VerificationStatus.REJECTED
        assert "does not match" in result.message

        wallet = service.ledger.get_wallet(USER_ID)
        assert wallet.pending_balance == Decimal("100.50")
        assert wallet.spendable_balance == Decimal("0")
        stored = service.storage.get_pending_reward(reward.id)
        assert stored["status"] == RewardStatus.PENDING_VERIFICATION
        assert stored["verification_request_id"] is None
        assert service.storage.find_executions() == []

    def test_new_request_after_rejection(self, service, credit, signer, imposter, sign):
        """A rejected request does not block a fresh attempt."""
        credit(USER_ID, "10")
        first = service.verification.create_request(USER_ID, "signature")
        service.verification.submit_signature(USER_ID, sign(first.message_to_sign, imposter), signer.address, "erc20")

        second = service.verification.create_request(USER_ID, "signature")
        result = service.verification.submit_signature(
            USER_ID, sign(second.message_to_sign, signer), signer.address, "erc20",
        )

        assert second.request_id != first.request_id
        assert result.status == VerificationStatus.APPROVED

    def test_malformed_signature_changes_nothing(self, service, credit, signer):
        """Input validation happens before any state change."""
        credit(USER_ID, "10")
        response = service.verification.create_request(USER_ID, "signature")

        with pytest.raises(ValidationError):
            service.verification.submit_signature(USER_ID, "0xdeadbeef", signer.address, "erc20")

        assert service.storage.get_request(response.request_id)["status"] == VerificationStatus.PENDING
        assert service.storage.find_attempts(user_id=USER_ID) == []

    def test_invalid_address(self, service, credit, signer, sign):
        """Malformed wallet addresses are refused."""
        credit(USER_ID, "10")
        response = service.verification.create_request(USER_ID, "signature")

        with pytest.raises(ValidationError):
            service.verification.submit_signature(USER_ID, sign(response.message_to_sign, signer), "0x1234", "erc20")

    def test_unsupported_network(self, service, credit, signer, sign):
        """Unknown networks are refused."""
        credit(USER_ID, "10")
        response = service.verification.create_request(USER_ID, "signature")

        with pytest.raises(ValidationError):
            service.verification.submit_signature(USER_ID, sign(response.message_to_sign, signer), signer.address, "solana")

    def test_no_open_request(self, service, signer, sign):
        """Submitting without a pending request is a conflict."""
        with pytest.raises(NoOpenRequest):
            service.verification.submit_signature(USER_ID, sign("anything", signer), signer.address, "erc20")

    def test_other_users_request_is_not_visible(self, service, credit, signer, sign):
        """A caller cannot submit against someone else's request."""
        credit(USER_ID, "10")
        response = service.verification.create_request(USER_ID, "signature")

        with pytest.raises(RequestNotFound):
            service.verification.submit_signature(
                OTHER_USER_ID, sign(response.message_to_sign, signer), signer.address, "erc20",
                request_id=response.request_id,
            )


class TestConcurrentSubmission:
    """Tests for racing submissions against one request."""

    @pytest.mark.parametrize("pass_request_id", [True, False])
    def test_only_one_submission_wins(self, service, credit, signer, sign, pass_request_id):
        """Exactly one racing submission approves; the other sees a conflict and nothing is released twice."""
        credit(USER_ID, "100.50")
        response = service.verification.create_request(USER_ID, "signature")
        signature = sign(response.message_to_sign, signer)
        barrier = threading.Barrier(2)
        outcomes = []

        def submit():
            barrier.wait()
            try:
                outcomes.append(service.verification.submit_signature(
                    USER_ID, signature, signer.address, "erc20",
                    request_id=response.request_id if pass_request_id else None,
                ))
            except StateConflict as e:
                outcomes.append(e)

        threads = [threading.Thread(target=submit) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        approvals = [o for o in outcomes if not isinstance(o, Exception)]
        conflicts = [o for o in outcomes if isinstance(o, StateConflict)]
        assert len(approvals) == 1
        assert len(conflicts) == 1
        assert approvals[0].status == VerificationStatus.APPROVED

        wallet = service.ledger.get_wallet(USER_ID)
        assert wallet.spendable_balance == Decimal("100.50")
        assert wallet.pending_balance == Decimal("0")
        assert len(service.storage.find_admin_payments()) == 1


class TestExpiry:
    """Tests for request deadlines."""

    def test_submission_after_deadline(self, service, credit, signer, sign, clock):
        """A late signature expires the request instead of approving it."""
        reward = credit(USER_ID, "10")
        response = service.verification.create_request(USER_ID, "signature")
        clock.advance(hours=24, seconds=1)

        result = service.verification.submit_signature(
            USER_ID, sign(response.message_to_sign, signer), signer.address, "erc20",
        )

        assert result.success is False
        assert result.status == VerificationStatus.EXPIRED
        assert service.storage.get_pending_reward(reward.id)["verification_request_id"] is None
        assert service.ledger.get_wallet(USER_ID).spendable_balance == Decimal("0")
        assert service.ledger.get_wallet(USER_ID).pending_balance == Decimal("10")

    def test_sweep_expires_overdue_requests(self, service, credit, clock):
        """The sweep expires overdue requests and is idempotent."""
        reward = credit(USER_ID, "10")
        response = service.verification.create_request(USER_ID, "signature")
        clock.advance(hours=25)

        assert service.verification.expire_overdue_requests() == 1
        assert service.verification.expire_overdue_requests() == 0

        assert service.storage.get_request(response.request_id)["status"] == VerificationStatus.EXPIRED
        stored = service.storage.get_pending_reward(reward.id)
        assert stored["status"] == RewardStatus.PENDING_VERIFICATION
        assert stored["verification_request_id"] is None
        assert "verification_expired" in [n["kind"] for n in service.notifier.sent]

    def test_sweep_leaves_live_requests(self, service, credit, clock):
        """Requests inside their window are untouched."""
        credit(USER_ID, "10")
        response = service.verification.create_request(USER_ID, "signature")
        clock.advance(hours=23)

        assert service.verification.expire_overdue_requests() == 0
        assert service.storage.get_request(response.request_id)["status"] == VerificationStatus.PENDING

    def test_expired_request_cannot_be_revived(self, service, credit, signer, sign, clock):
        """Expired is terminal; the user must open a new request."""
        credit(USER_ID, "10")
        response = service.verification.create_request(USER_ID, "signature")
        clock.advance(hours=25)
        service.verification.expire_overdue_requests()

        with pytest.raises(StateConflict):
            service.verification.submit_signature(
                USER_ID, sign(response.message_to_sign, signer), signer.address, "erc20",
                request_id=response.request_id,
            )


class TestAssistedVerification:
    """Tests for the reviewer-assisted path."""

    def _submit(self, service):
        response = service.verification.create_request(USER_ID, "assisted", ip_address="10.0.0.2")
        service.verification.submit_assisted(
            USER_ID, {"screenshot_url": "https://files.example/wallet.png"}, ip_address="10.0.0.2",
        )
        return response

    def test_create_returns_instructions(self, service, credit):
        """Assisted requests explain what evidence to provide and carry no challenge."""
        credit(USER_ID, "10")

        response = service.verification.create_request(USER_ID, "assisted")

        assert response.instructions
        assert response.message_to_sign is None

    def test_submission_waits_for_review(self, service, credit):
        """Evidence moves the request to verifying without releasing anything."""
        credit(USER_ID, "10")

        response = self._submit(service)

        request = service.storage.get_request(response.request_id)
        assert request["status"] == VerificationStatus.VERIFYING
        assert request["evidence"] == {"screenshot_url": "https://files.example/wallet.png"}
        assert service.ledger.get_wallet(USER_ID).spendable_balance == Decimal("0")

    def test_empty_evidence_rejected(self, service, credit):
        """Evidence is required."""
        credit(USER_ID, "10")
        service.verification.create_request(USER_ID, "assisted")

        with pytest.raises(ValidationError):
            service.verification.submit_assisted(USER_ID, {})

    def test_asking_again_while_under_review_extends_deadline(self, service, credit, clock):
        """A request under review is refreshed in place; the evidence stays."""
        credit(USER_ID, "10")
        response = self._submit(service)
        clock.advance(hours=20)

        again = service.verification.create_request(USER_ID, "assisted")

        assert again.request_id == response.request_id
        assert again.status == VerificationStatus.VERIFYING
        assert again.expires_at == clock() + timedelta(hours=24)
        request = service.storage.get_request(response.request_id)
        assert request["status"] == VerificationStatus.VERIFYING
        assert request["evidence"] == {"screenshot_url": "https://files.example/wallet.png"}
        assert audit_actions(service, response.request_id)[-1] == AuditAction.REQUEST_REFRESHED

    def test_switching_method_under_review_is_a_conflict(self, service, credit):
        """Evidence under review cannot be swapped for a signature challenge."""
        credit(USER_ID, "10")
        self._submit(service)

        with pytest.raises(StateConflict):
            service.verification.create_request(USER_ID, "signature")

    def test_reviewer_approval_releases(self, service, credit, admin):
        """An admin approval settles the request and records the reviewer."""
        credit(USER_ID, "250")
        response = self._submit(service)

        result = service.verification.approve(response.request_id, admin, "Screenshot matches")

        assert result.status == VerificationStatus.APPROVED
        assert result.released_amount == Decimal("250")
        request = service.storage.get_request(response.request_id)
        assert request["reviewed_by"] == admin.user_id
        assert request["admin_override_by"] is None
        assert service.ledger.get_wallet(USER_ID).spendable_balance == Decimal("250")

    def test_non_admin_cannot_approve(self, service, credit):
        """Review requires the reviewer capability."""
        credit(USER_ID, "10")
        response = self._submit(service)

        with pytest.raises(AccessDenied):
            service.verification.approve(response.request_id, service.principal(USER_ID))

    def test_reviewer_rejection(self, service, credit, admin):
        """Rejection records the reason and keeps rewards in escrow."""
        reward = credit(USER_ID, "10")
        response = self._submit(service)

        result = service.verification.reject(response.request_id, "Screenshot unreadable", admin)

        assert result.status == VerificationStatus.REJECTED
        request = service.storage.get_request(response.request_id)
        assert request["rejection_reason"] == "Screenshot unreadable"
        assert service.storage.get_pending_reward(reward.id)["verification_request_id"] is None
        assert service.ledger.get_wallet(USER_ID).pending_balance == Decimal("10")

    def test_rejection_requires_reason(self, service, credit, admin):
        """A reviewer must say why."""
        credit(USER_ID, "10")
        response = self._submit(service)

        with pytest.raises(ValidationError):
            service.verification.reject(response.request_id, "  ", admin)

    def test_pending_request_cannot_be_approved(self, service, credit, admin):
        """Only submitted requests are reviewable."""
        credit(USER_ID, "10")
        response = service.verification.create_request(USER_ID, "assisted")

        with pytest.raises(StateConflict):
            service.verification.approve(response.request_id, admin)

    def test_approval_after_deadline(self, service, credit, admin, clock):
        """A review that arrives too late expires the request."""
        credit(USER_ID, "10")
        response = self._submit(service)
        clock.advance(hours=25)

        with pytest.raises(StateConflict):
            service.verification.approve(response.request_id, admin)

        assert service.storage.get_request(response.request_id)["status"] == VerificationStatus.EXPIRED

    def test_double_approval_is_a_conflict(self, service, credit, admin):
        """Approved is terminal."""
        credit(USER_ID, "10")
        response = self._submit(service)
        service.verification.approve(response.request_id, admin)

        with pytest.raises(StateConflict):
            service.verification.approve(response.request_id, admin)

        assert service.ledger.get_wallet(USER_ID).spendable_balance == Decimal("10")


class TestStatusQueries:
    """Tests for request lookups."""

    def test_owner_and_admin_can_read(self, service, credit, admin):
        """Owners and admins see the request; others get not found."""
        credit(USER_ID, "10")
        response = service.verification.create_request(USER_ID, "signature")

        assert service.verification.get_status(response.request_id, service.principal(USER_ID)).user_id == USER_ID
        assert service.verification.get_status(response.request_id, admin).id == response.request_id
        with pytest.raises(RequestNotFound):
            service.verification.get_status(response.request_id, service.principal(OTHER_USER_ID))

    def test_wallet_summary(self, service, credit):
        """The summary shows pending rewards and the open request."""
        credit(USER_ID, "10")
        assert service.wallet_summary(USER_ID).can_claim is True

        service.verification.create_request(USER_ID, "signature")
        summary = service.wallet_summary(USER_ID)

        assert summary.wallet.pending_balance == Decimal("10")
        assert len(summary.rewards) == 1
        assert summary.active_request is not None
        assert summary.can_claim is False


class TestAdminOverride:
    """Tests for an admin approving a signature request by hand."""

    def _stuck_in_processing(self, service, clock):
        response = service.verification.create_request(USER_ID, "signature")
        with service.storage.transaction():
            service.storage.transition_request(
                response.request_id, [VerificationStatus.PENDING], VerificationStatus.PROCESSING, updated_at=clock(),
            )
        return response

    def test_asking_again_while_processing_is_a_conflict(self, service, credit, clock):
        """A signature being checked is never replaced by a new challenge."""
        credit(USER_ID, "10")
        self._stuck_in_processing(service, clock)

        with pytest.raises(StateConflict):
            service.verification.create_request(USER_ID, "signature")

    def test_override_is_recorded_and_flagged(self, service, credit, clock, admin):
        """Manual approval of a signature request records the override and scores it."""
        credit(USER_ID, "10")
        response = self._stuck_in_processing(service, clock)

        result = service.verification.approve(response.request_id, admin, "Signed on a call with support")

        assert result.status == VerificationStatus.APPROVED
        request = service.storage.get_request(response.request_id)
        assert request["admin_override_by"] == admin.user_id
        assert request["admin_override_reason"] == "Signed on a call with support"
        assert request["reviewed_by"] == admin.user_id
        assert "admin_override" in request["risk_factors"]
        assert request["risk_score"] == 25
        assert service.ledger.get_wallet(USER_ID).spendable_balance == Decimal("10")

        report = service.compliance_report(response.request_id, admin)
        assert [f["type"] for f in report["compliance_flags"]] == ["admin_override"]
