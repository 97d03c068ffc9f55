from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct

from gateway.config import GatewayConfig
from gateway.models import Network, RewardDomain
from gateway.service import GatewayService
from gateway.signatures import tron_signable_message

ADMIN_ID = 1
USER_ID = 42
OTHER_USER_ID = 77

SIGNER_KEY = "0x" + "4c" * 32
IMPOSTER_KEY = "0x" + "8f" * 32


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def config():
    return GatewayConfig(
        admin_user_ids=frozenset({ADMIN_ID}),
        admin_wallets={
            Network.ERC20: "0x000000000000000000000000000000000000dEaD",
            Network.TRC20: "TLa2f6VPqDgRE67v1736s7bJ8Ray5wYjU7",
        },
    )


@pytest.fixture
def service(config, clock):
    return GatewayService(config, clock=clock)


@pytest.fixture
def admin(service):
    return service.principal(ADMIN_ID, "192.168.1.1")


@pytest.fixture
def signer():
    return Account.from_key(SIGNER_KEY)


@pytest.fixture
def imposter():
    return Account.from_key(IMPOSTER_KEY)


@pytest.fixture
def sign():
    def _sign(message: str, account, tron: bool = False) -> str:
        signable = tron_signable_message(message) if tron else encode_defunct(text=message)
        signed = Account.sign_message(signable, private_key=account.key)
        return "0x" + bytes(signed.signature).hex()
    return _sign


@pytest.fixture
def credit(service):
    def _credit(user_id, amount, domain=RewardDomain.LOTTERY_PRIZE, context=None, idempotency_key=None):
        return service.producers.credit_pending_reward(
            user_id, domain, Decimal(amount), context, idempotency_key,
        )
    return _credit
