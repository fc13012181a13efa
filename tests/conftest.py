import asyncio

import pytest

from partcall.processor import TurnProcessor
from partcall.session import initialize_call_state
from partcall.state_machine import StateMachine
from partcall.states import Intent
from partcall.store import InMemoryStateStore


def make_payload(parts=None, **overrides):
    payload = {
        "callId": "call_1",
        "quoteRequestId": "qr_1",
        "supplierId": "sup_1",
        "supplierName": "Valley Equipment Supply",
        "supplierPhone": "+15125550100",
        "organizationId": "org_1",
        "callerId": "user_1",
        "parts": parts if parts is not None else [
            {"partNumber": "1R-0750", "description": "fuel filter", "quantity": 2},
        ],
        "customContext": "Company: Acme Rentals\nQuote Request: QR-0042",
        "customInstructions": "",
    }
    payload.update(overrides)
    return payload


class StubLLM:
    """Stands in for LLMClient; each call pops the next scripted result."""

    def __init__(self, intents=None, quotes=None, delay: float = 0.0):
        self.intents = list(intents or [])
        self.quotes = list(quotes or [])
        self.delay = delay
        self.classify_calls = []
        self.extract_calls = []

    async def classify(self, utterance, node, context="", timeout=None):
        self.classify_calls.append((utterance, node))
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.intents.pop(0) if self.intents else Intent.UNKNOWN
        if isinstance(result, Exception):
            raise result
        return result

    async def extract_quotes(self, utterance, parts, current=None, timeout=None):
        self.extract_calls.append(utterance)
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.quotes.pop(0) if self.quotes else []
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def payload():
    return make_payload()


@pytest.fixture
def state(payload):
    return initialize_call_state(payload)


@pytest.fixture
def budget_state():
    return initialize_call_state(make_payload(parts=[
        {"partNumber": "1R-0750", "description": "fuel filter", "quantity": 1, "budgetMax": 400},
    ]))


@pytest.fixture
def machine():
    return StateMachine()


@pytest.fixture
def store():
    return InMemoryStateStore()


@pytest.fixture
def processor(store):
    return TurnProcessor(store)
