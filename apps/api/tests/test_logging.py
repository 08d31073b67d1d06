"""
Credential redaction in log output.
"""
import json
import logging

from core.logging import REDACTED, JSONFormatter, SecretRedactionFilter, redact_fields


def _record(msg, *args, extra_fields=None):
    record = logging.LogRecord("clipin.test", logging.INFO, __file__, 1, msg, args, None)
    if extra_fields is not None:
        record.extra_fields = extra_fields
    return record


def test_bearer_token_masked_in_message():
    record = _record("Calling Peloton with Authorization: Bearer %s", "eyJhbGciOi.abc-def")
    SecretRedactionFilter().filter(record)
    assert "eyJhbGciOi" not in record.getMessage()
    assert REDACTED in record.getMessage()


def test_plain_message_untouched():
    record = _record("Processed %d users", 3)
    SecretRedactionFilter().filter(record)
    assert record.getMessage() == "Processed 3 users"
    assert record.args == (3,)


def test_sensitive_structured_fields_masked():
    fields = redact_fields({
        "path": "/v1/peloton/connect",
        "access_token": "raw-access",
        "headers": {"Authorization": "Bearer abc"},
    })
    assert fields["path"] == "/v1/peloton/connect"
    assert fields["access_token"] == REDACTED
    assert fields["headers"]["Authorization"] == REDACTED


def test_json_formatter_includes_extra_fields():
    record = _record("Response", extra_fields={"status_code": 200})
    payload = json.loads(JSONFormatter().format(record))
    assert payload["message"] == "Response"
    assert payload["status_code"] == 200
    assert payload["service"] == "clipin-api"
    assert "location" not in payload
