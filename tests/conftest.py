"""Pytest fixtures for the payments service tests."""

import pytest

from src.database.payment_store import InMemoryPaymentStore
from src.integrations.contracts.interfaces import CreatePaymentInput
from src.integrations.policy.payment_service import PaymentService
from src.utils.config_loader import DarajaConfig
from tests.fakes import FakeGateway, TickingClock


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def store(clock):
    """In-memory payment store for tests."""
    return InMemoryPaymentStore(clock=clock)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def service(store, gateway):
    return PaymentService(store, gateway)


@pytest.fixture
def payment_input():
    return CreatePaymentInput(
        phone_number="0712345678",
        amount=100,
        account_reference="INV-001",
        transaction_description="Order payment",
    )


@pytest.fixture
def daraja_config():
    return DarajaConfig(
        consumer_key="key",
        consumer_secret="secret",
        pass_key="passkey",
        short_code="174379",
        callback_url="https://example.com/api/payments/callback",
    )
