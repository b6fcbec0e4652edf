"""
Utility Tests
Sanitizer, network health, session context and pagination helpers
"""

import json

from tests.fixtures import FakeClock
from utils.data_sanitizer import DataSanitizer, mask_token_safe, sanitize_for_log
from utils.network_health import NetworkErrorKind, NetworkHealth
from utils.pagination import Page, build_query_params
from utils.session_context import SESSION_EXPIRED_NOTICE, SessionContext, normalize_scopes


class TestDataSanitizer:
    """Secrets never reach logs"""

    def test_mask_token(self):
        assert mask_token_safe("abcdefghijklmnop") == "[TOKEN:abcd***]"
        assert mask_token_safe("short") == "[REDACTED]"
        assert mask_token_safe(None) == "[NO_TOKEN]"

    def test_sanitize_text_masks_bearer_and_query_token(self):
        text = "GET https://portal/upload?token=abc123secretvalue&x=1 Bearer eyJhbGciOiJIUzI1NiJ9"
        sanitized = DataSanitizer.sanitize_text(text)
        assert "abc123secretvalue" not in sanitized
        assert "eyJhbGciOiJIUzI1NiJ9" not in sanitized
        assert "&x=1" in sanitized

    def test_sanitize_dict_redacts_sensitive_fields(self):
        sanitized = DataSanitizer.sanitize_dict({
            "token": "s3cret",
            "headers": {"Authorization": "Bearer abc", "Accept": "application/json"},
            "issued_to_email": "beneficiary@example.com",
        })
        assert sanitized["token"] == "[REDACTED]"
        assert sanitized["headers"]["Authorization"] == "[REDACTED]"
        assert sanitized["headers"]["Accept"] == "application/json"
        assert sanitized["issued_to_email"] == "be***@example.com"

    def test_sanitize_for_log_is_json_for_mappings(self):
        assert json.loads(sanitize_for_log({"secret": "x"})) == {"secret": "[REDACTED]"}

    def test_strip_query_param_keeps_others(self):
        url = "https://portal.example/external?token=abc&lang=fr#top"
        assert DataSanitizer.strip_query_param(url) == "https://portal.example/external?lang=fr#top"

    def test_redact_external_summary_drops_internal_fields(self):
        redacted = DataSanitizer.redact_external_summary({
            "escrow_id": "42",
            "status": "FUNDED",
            "currency": "USD",
            "amount_total": "1000.00",
            "internal_note": "sender is VIP",
            "beneficiary_profile_id": "b-7",
            "milestones": [{"milestone_idx": 1, "status": "WAITING", "provider_user_id": "u-1"}],
        })
        assert "internal_note" not in redacted
        assert "beneficiary_profile_id" not in redacted
        assert "provider_user_id" not in redacted["milestones"][0]

    def test_redact_external_proof(self):
        redacted = DataSanitizer.redact_external_proof({
            "id": "p-1", "status": "PENDING", "storage_key": "s3://bucket/x", "terminal": False,
        })
        assert redacted["proof_id"] == "p-1"
        assert "storage_key" not in redacted
        assert redacted["terminal"] is False


class TestNetworkHealth:
    """Sliding window with burst dedupe"""

    def test_three_spaced_errors_mark_unstable(self):
        clock = FakeClock()
        health = NetworkHealth(clock=clock)
        for _ in range(3):
            health.record_error(NetworkErrorKind.SERVER)
            clock.advance(1)
        assert health.snapshot().unstable

    def test_burst_counts_once(self):
        clock = FakeClock()
        health = NetworkHealth(clock=clock)
        for _ in range(5):
            health.record_error(NetworkErrorKind.NETWORK)
            clock.advance(0.05)
        assert health.snapshot().error_count == 1

    def test_errors_age_out(self):
        clock = FakeClock()
        health = NetworkHealth(clock=clock)
        health.record_error(NetworkErrorKind.SERVER)
        clock.advance(61)
        assert health.snapshot().error_count == 0

    def test_listeners_receive_snapshots(self):
        health = NetworkHealth(clock=FakeClock())
        seen = []
        unsubscribe = health.subscribe(seen.append)

        health.set_online(False)
        unsubscribe()
        health.set_online(True)

        assert len(seen) == 1
        assert seen[0].online is False


class TestSessionContext:

    def test_from_user_collects_scopes(self):
        ctx = SessionContext.from_user("tok-123456789", {"id": 5, "scopes": "proofs:read, escrows:write",
                                                         "api_scopes": ["payments:execute"]})
        assert ctx.user_id == "5"
        assert ctx.has_scope("escrows:write")
        assert ctx.has_scope("payments:execute")

    def test_clear_resets_identity(self):
        ctx = SessionContext(auth_token="tok-123456789", user_id="5", scopes=normalize_scopes("a b"))
        assert ctx.auth_headers() == {"Authorization": "Bearer tok-123456789"}

        ctx.clear()

        assert not ctx.is_authenticated
        assert ctx.auth_headers() == {}
        assert ctx.scopes == frozenset()
        assert ctx.notice == SESSION_EXPIRED_NOTICE


class TestPagination:

    def test_envelope(self):
        page = Page.from_payload({"items": [1, 2], "total": 5, "limit": 2, "offset": 0}, item_factory=str)
        assert page.items == ["1", "2"]
        assert page.has_more

    def test_bare_array(self):
        page = Page.from_payload([1, 2, 3])
        assert page.total == 3
        assert page.limit is None
        assert not page.has_more

    def test_query_params(self):
        assert build_query_params({"mine": True, "status": None, "limit": 20, "q": ""}) == {
            "mine": "true", "limit": "20",
        }
