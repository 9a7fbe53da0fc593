from __future__ import annotations

import json
import unittest
from typing import Any

from celltrack.chat import extract_chat_completion_text, extract_json_object_from_text, post_chat_completion
from celltrack.errors import VisionServiceError
from celltrack.inference import (
    VisionConfig,
    analyze_frame,
    backoff_delay,
    build_frame_request,
    classify_event,
    normalize_frame_payload,
)
from celltrack.types import EventKind

from chat_stub import ChatStubServer, closed_port_url


def _completion(content: str) -> dict[str, Any]:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


class _ScriptedTransport:
    """Replays a list of responses/exceptions, one per call."""

    def __init__(self, script: list[Any]) -> None:
        self.script = list(script)
        self.calls: list[dict[str, Any]] = []

    def __call__(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(kwargs)
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class EventClassificationTest(unittest.TestCase):
    def test_rules_in_order(self) -> None:
        self.assertEqual(classify_event("Cell in Metaphase"), EventKind.MITOSIS)
        self.assertEqual(classify_event("two cells DIVIDING"), EventKind.MITOSIS)
        self.assertEqual(classify_event("Apoptosis with blebbing"), EventKind.APOPTOSIS)
        self.assertEqual(classify_event("membrane lysing observed"), EventKind.APOPTOSIS)
        self.assertEqual(classify_event("Cell fusion at upper left"), EventKind.INTERACTION)
        self.assertEqual(classify_event("contact inhibition"), EventKind.INTERACTION)
        self.assertEqual(classify_event("Detachment from substrate"), EventKind.OBSERVATION)

    def test_first_matching_rule_wins(self) -> None:
        # Mentions both division and death; the mitosis rule is checked first.
        self.assertEqual(classify_event("death after failed division"), EventKind.MITOSIS)


class NormalizePayloadTest(unittest.TestCase):
    def test_defaults_and_dropped_detections(self) -> None:
        data = {
            "cellCount": 4,
            "cells": [
                {"x": 10, "y": 20, "r": 3},
                {"x": "bad", "y": 5, "r": 2},
                {"y": 5, "r": 2},
                {"x": 40.5, "y": 60, "r": 4, "status": "Dividing"},
                {"x": 120, "y": -4, "r": 2, "status": ""},
            ],
            "frameEvents": ["Early prophase in cell 2", "", "Cell fusion"],
        }
        frame = normalize_frame_payload(data, 2.0)
        self.assertEqual(frame.timestamp, 2.0)
        self.assertEqual(frame.cell_count, 4)
        self.assertEqual([d.id for d in frame.detections], [1, 2, 3])
        self.assertEqual(frame.detections[0].status, "Normal")
        self.assertEqual(frame.detections[1].status, "Dividing")
        self.assertEqual((frame.detections[2].x, frame.detections[2].y), (100.0, 0.0))
        self.assertEqual([e.kind for e in frame.events], [EventKind.MITOSIS, EventKind.INTERACTION])

    def test_missing_count_falls_back_to_detections(self) -> None:
        frame = normalize_frame_payload({"cells": [{"x": 1, "y": 1, "r": 1}]}, 0.0)
        self.assertEqual(frame.cell_count, 1)
        self.assertEqual(frame.events, ())


class ChatParsingTest(unittest.TestCase):
    def test_extract_text_from_content_parts(self) -> None:
        payload = {"choices": [{"message": {"content": [{"type": "text", "text": " hello "}, {"type": "x"}]}}]}
        self.assertEqual(extract_chat_completion_text(payload), "hello")
        self.assertEqual(extract_chat_completion_text({}), "")

    def test_extract_json_from_fenced_block(self) -> None:
        text = 'Here you go:\n```json\n{"cellCount": 2}\n```'
        self.assertEqual(extract_json_object_from_text(text), {"cellCount": 2})
        with self.assertRaises(ValueError):
            extract_json_object_from_text("no json here")

    def test_frame_request_shape(self) -> None:
        payload = build_frame_request(VisionConfig(model="m"), b"\xff\xd8jpeg")
        content = payload["messages"][0]["content"]
        self.assertTrue(content[0]["image_url"]["url"].startswith("data:image/jpeg;base64,"))
        self.assertEqual(content[1]["type"], "text")
        self.assertEqual(payload["response_format"], {"type": "json_object"})


class AnalyzeFrameRetryTest(unittest.TestCase):
    def setUp(self) -> None:
        self.sleeps: list[float] = []
        self.config = VisionConfig(max_attempts=3, backoff_base_sec=1.0)
        self.good = _completion(
            json.dumps(
                {
                    "cellCount": 2,
                    "cells": [{"x": 10, "y": 10, "r": 2}, {"x": 50, "y": 50, "r": 3, "status": "Rounding"}],
                    "frameEvents": ["Cell death near edge"],
                }
            )
        )

    def test_backoff_schedule(self) -> None:
        self.assertEqual([backoff_delay(i, 1.0) for i in range(3)], [1.0, 2.0, 4.0])
        self.assertEqual(backoff_delay(2, 0.5), 2.0)

    def test_retryable_then_success(self) -> None:
        transport = _ScriptedTransport(
            [
                VisionServiceError("HTTP 503", retryable=True, status=503),
                VisionServiceError("connection reset", retryable=True),
                self.good,
            ]
        )
        frame = analyze_frame(b"img", 4.0, self.config, transport=transport, sleep=self.sleeps.append)
        self.assertEqual(len(transport.calls), 3)
        self.assertEqual(self.sleeps, [1.0, 2.0])
        self.assertEqual(frame.cell_count, 2)
        self.assertEqual(frame.detections[1].status, "Rounding")
        self.assertEqual(frame.events[0].kind, EventKind.APOPTOSIS)

    def test_exhausted_retries_yield_empty_frame(self) -> None:
        transport = _ScriptedTransport(
            [VisionServiceError("HTTP 500", retryable=True, status=500) for _ in range(3)]
        )
        frame = analyze_frame(b"img", 6.0, self.config, transport=transport, sleep=self.sleeps.append)
        self.assertEqual(len(transport.calls), 3)
        self.assertEqual(self.sleeps, [1.0, 2.0])
        self.assertEqual(frame.timestamp, 6.0)
        self.assertEqual(frame.cell_count, 0)
        self.assertEqual(frame.detections, ())
        self.assertEqual(frame.events, ())

    def test_non_retryable_is_not_retried(self) -> None:
        transport = _ScriptedTransport([VisionServiceError("HTTP 400", retryable=False, status=400), self.good])
        frame = analyze_frame(b"img", 1.0, self.config, transport=transport, sleep=self.sleeps.append)
        self.assertEqual(len(transport.calls), 1)
        self.assertEqual(self.sleeps, [])
        self.assertEqual(frame.cell_count, 0)

    def test_malformed_model_output_is_not_retried(self) -> None:
        transport = _ScriptedTransport([_completion("I cannot see any cells, sorry."), self.good])
        frame = analyze_frame(b"img", 1.0, self.config, transport=transport, sleep=self.sleeps.append)
        self.assertEqual(len(transport.calls), 1)
        self.assertEqual(frame.detections, ())

    def test_empty_text_gives_empty_frame(self) -> None:
        transport = _ScriptedTransport([_completion("")])
        frame = analyze_frame(b"img", 3.0, self.config, transport=transport, sleep=self.sleeps.append)
        self.assertEqual(frame.cell_count, 0)
        self.assertEqual(len(transport.calls), 1)

    def test_config_validation(self) -> None:
        with self.assertRaises(ValueError):
            VisionConfig(max_attempts=0).validate()
        with self.assertRaises(ValueError):
            VisionConfig(endpoint=" ").validate()


class PostChatCompletionTest(unittest.TestCase):
    def _post(self, url: str) -> dict[str, Any]:
        return post_chat_completion(endpoint=url, payload={"model": "m", "messages": []}, timeout_sec=5.0)

    def _failure(self, status: int, body: bytes) -> VisionServiceError:
        with ChatStubServer(status, body) as server:
            with self.assertRaises(VisionServiceError) as ctx:
                self._post(server.url)
        return ctx.exception

    def test_success_returns_parsed_object(self) -> None:
        body = json.dumps(_completion("{}")).encode("utf-8")
        with ChatStubServer(200, body) as server:
            response = self._post(server.url)
        self.assertEqual(extract_chat_completion_text(response), "{}")

    def test_server_error_is_retryable(self) -> None:
        exc = self._failure(503, b"overloaded")
        self.assertTrue(exc.retryable)
        self.assertEqual(exc.status, 503)

    def test_client_errors_are_not_retryable(self) -> None:
        for status in (400, 429):
            exc = self._failure(status, b"nope")
            self.assertFalse(exc.retryable, status)
            self.assertEqual(exc.status, status)

    def test_connection_refused_is_retryable(self) -> None:
        with self.assertRaises(VisionServiceError) as ctx:
            self._post(closed_port_url())
        self.assertTrue(ctx.exception.retryable)
        self.assertIsNone(ctx.exception.status)

    def test_non_json_body_is_not_retryable(self) -> None:
        self.assertFalse(self._failure(200, b"<html>gateway</html>").retryable)

    def test_undecodable_body_is_not_retryable(self) -> None:
        self.assertFalse(self._failure(200, b'{"choices": "\xff\xfe"}').retryable)

    def test_bad_endpoint_url_is_not_retryable(self) -> None:
        with self.assertRaises(VisionServiceError) as ctx:
            self._post("localhost-without-scheme")
        self.assertFalse(ctx.exception.retryable)

    def test_undecodable_body_gives_empty_frame(self) -> None:
        sleeps: list[float] = []
        with ChatStubServer(200, b'{"choices": "\xff\xfe"}') as server:
            frame = analyze_frame(b"img", 2.0, VisionConfig(endpoint=server.url), sleep=sleeps.append)
            requests = server.requests
        self.assertEqual(frame.cell_count, 0)
        self.assertEqual(frame.detections, ())
        self.assertEqual(requests, 1)
        self.assertEqual(sleeps, [])


if __name__ == "__main__":
    unittest.main()
