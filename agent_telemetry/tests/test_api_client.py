import unittest
from unittest.mock import Mock

import requests

from agent_telemetry.db.api_client import (
    CONVERSATIONS_ENDPOINT,
    METRICS_ENDPOINT,
    ApiClient,
    MetricsSender,
    SyncRequestError,
    extract_repository,
)
from agent_telemetry.models import ConversationPayload, HistoryEntry, Session


def _response(status_code: int = 200, body=None, reason: str = "") -> Mock:
    response = Mock()
    response.status_code = status_code
    response.ok = status_code < 400
    response.reason = reason
    response.json.return_value = {"success": True} if body is None else body
    return response


def _client(*responses, **kwargs) -> tuple[ApiClient, Mock, list[float]]:
    http = Mock()
    http.post.side_effect = list(responses)
    sleeps: list[float] = []
    client = ApiClient(
        "https://telemetry.example.com/",
        api_key=kwargs.pop("api_key", ""),
        cookies=kwargs.pop("cookies", ""),
        retry_attempts=2,
        retry_delays=(1.0, 2.0),
        version="1.2.3",
        session=http,
        sleep=sleeps.append,
        **kwargs,
    )
    return client, http, sleeps


class ApiClientTests(unittest.TestCase):
    def test_server_error_is_retried_with_backoff(self) -> None:
        client, http, sleeps = _client(_response(500, {"message": "boom"}), _response(200))

        self.assertEqual(client.post(METRICS_ENDPOINT, {"name": "x"}), {"success": True})
        self.assertEqual(http.post.call_count, 2)
        self.assertEqual(sleeps, [1.0])
        self.assertEqual(http.post.call_args.args[0], "https://telemetry.example.com/v1/metrics")

    def test_client_error_fails_immediately(self) -> None:
        client, http, sleeps = _client(_response(400, {"message": "bad metric", "details": "name"}))

        with self.assertRaises(SyncRequestError) as ctx:
            client.post(METRICS_ENDPOINT, {})

        self.assertEqual(ctx.exception.status_code, 400)
        self.assertFalse(ctx.exception.retryable)
        self.assertIn("bad metric (name)", str(ctx.exception))
        self.assertEqual((http.post.call_count, sleeps), (1, []))

    def test_network_errors_exhaust_retries(self) -> None:
        client, http, sleeps = _client(
            requests.ConnectionError("refused"),
            requests.Timeout("slow"),
            _response(429, reason="Too Many Requests"),
        )

        with self.assertRaises(SyncRequestError) as ctx:
            client.post(METRICS_ENDPOINT, {})

        self.assertEqual(http.post.call_count, 3)
        self.assertEqual(sleeps, [1.0, 2.0])
        self.assertEqual(ctx.exception.status_code, 429)
        self.assertIn("Failed after 2 retries", str(ctx.exception))

    def test_success_false_in_body_is_an_error(self) -> None:
        client, _, _ = _client(_response(200, {"success": False, "message": "rejected"}))
        with self.assertRaises(SyncRequestError):
            client.post(METRICS_ENDPOINT, {})

    def test_missing_base_url_is_not_retried(self) -> None:
        http = Mock()
        client = ApiClient("", session=http)
        client.base_url = ""
        with self.assertRaises(SyncRequestError) as ctx:
            client.post(METRICS_ENDPOINT, {})
        self.assertFalse(ctx.exception.retryable)
        http.post.assert_not_called()

    def test_headers_prefer_api_key_over_cookie(self) -> None:
        with_key, _, _ = _client(api_key="key-1", cookies="sid=abc")
        with_cookie, _, _ = _client(cookies="sid=abc")

        self.assertEqual(with_key.headers()["user-id"], "key-1")
        self.assertNotIn("Cookie", with_key.headers())
        self.assertEqual(with_cookie.headers()["Cookie"], "sid=abc")
        self.assertEqual(with_cookie.headers()["User-Agent"], "agent-telemetry/1.2.3")


class MetricsSenderTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.session = Session(
            sessionId="s1",
            agentName="claude",
            startTime="2026-02-16T10:00:00.000Z",
            workingDirectory="/work/acme/widgets",
            gitBranch="main",
        )

    async def test_dry_run_never_posts(self) -> None:
        client, http, _ = _client()
        sender = MetricsSender(client, dry_run=True)

        with self.assertLogs("agent_telemetry.sync", level="INFO") as logs:
            await sender.send_session_start(self.session, reason="startup")

        http.post.assert_not_called()
        self.assertIn("[DRY-RUN]", logs.output[0])

    async def test_session_end_metric_attributes(self) -> None:
        client, http, _ = _client(_response(200))
        sender = MetricsSender(client, dry_run=False)

        await sender.send_session_end(
            self.session,
            "failed",
            1500,
            reason="crash",
            error={"type": "hook", "code": "E1", "message": "bad"},
        )

        body = http.post.call_args.kwargs["json"]
        attrs = body["attributes"]
        self.assertEqual(body["name"], "agent_session_total")
        self.assertEqual((attrs["status"], attrs["session_duration_ms"], attrs["reason"]), ("failed", 1500, "crash"))
        self.assertEqual(attrs["repository"], "acme/widgets")
        self.assertEqual(attrs["total_output_tokens"], 0)
        self.assertTrue(attrs["had_errors"])
        self.assertEqual(attrs["errors"], {"hook": ["[E1] bad"]})

    async def test_conversation_body_carries_record_id(self) -> None:
        client, http, _ = _client(_response(200))
        payload = ConversationPayload(conversationId="c1", history=[HistoryEntry(role="User", message="hi", history_index=0)])

        await MetricsSender(client, dry_run=False).send_conversation("c1:e1", payload)

        self.assertEqual(http.post.call_args.args[0], f"https://telemetry.example.com{CONVERSATIONS_ENDPOINT}")
        body = http.post.call_args.kwargs["json"]
        self.assertEqual((body["recordId"], body["conversationId"]), ("c1:e1", "c1"))
        self.assertEqual(body["history"][0]["message"], "hi")


class ExtractRepositoryTests(unittest.TestCase):
    def test_last_two_path_components(self) -> None:
        self.assertEqual(extract_repository("/work/acme/widgets"), "acme/widgets")
        self.assertEqual(extract_repository("/solo"), "solo")
        self.assertEqual(extract_repository(""), "unknown")


if __name__ == "__main__":
    unittest.main()
