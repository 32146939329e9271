"""Unit tests for delivery module - Bird WhatsApp delivery.

Tests cover:
- The presign, upload and send calls in order with the expected payloads
- Auth header sent to the Bird API but not to the storage host
- Failure at each step raising DeliveryError naming that step

Real-world significance:
- The patient receives the report link through an approved template
- Leaking the access key to the storage host would expose the account
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Callable, Dict, List

import httpx
import pytest

from labreports.delivery import DeliveryClient
from labreports.enums import DeliveryStep
from labreports.exceptions import DeliveryError
from tests.fixtures.sample_input import write_pdf

API = "https://api.bird.test"
UPLOAD_URL = "https://storage.bird.test/upload"
MEDIA_URL = "https://media.bird.test/files/abc.pdf"
CHANNEL = "/workspaces/ws-1/channels/ch-1"


def bird_handler(
    requests: List[httpx.Request],
    *,
    presign_status: int = 200,
    upload_status: int = 204,
    send_status: int = 202,
) -> Callable[[httpx.Request], httpx.Response]:
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        url = str(request.url)
        if url == f"{API}{CHANNEL}/presigned-upload":
            if presign_status != 200:
                return httpx.Response(presign_status, json={"message": "forbidden"})
            return httpx.Response(
                200,
                json={
                    "uploadUrl": UPLOAD_URL,
                    "mediaUrl": MEDIA_URL,
                    "uploadFormData": {"key": "files/abc.pdf", "policy": "p0l1cy"},
                },
            )
        if url == UPLOAD_URL:
            return httpx.Response(upload_status, text="" if upload_status < 400 else "denied")
        if url == f"{API}{CHANNEL}/messages":
            if send_status >= 400:
                return httpx.Response(send_status, json={"message": "invalid template"})
            return httpx.Response(send_status, json={"id": "msg-1", "status": "accepted"})
        return httpx.Response(404)

    return handler


def make_client(handler) -> DeliveryClient:
    return DeliveryClient(
        "secret-key",
        "ws-1",
        "ch-1",
        "proj-1",
        "v1",
        base_url=API,
        transport=httpx.MockTransport(handler),
    )


@pytest.fixture
def artifact(tmp_test_dir: Path) -> Path:
    return write_pdf(tmp_test_dir / "BL-20250301.pdf")


@pytest.mark.unit
class TestDeliver:
    """Unit tests for DeliveryClient.deliver."""

    def test_three_calls_in_order(self, artifact: Path) -> None:
        """Verify presign, upload and send happen in order.

        Real-world significance:
        - mediaUrl from presign must be the link sent to the patient
        """
        requests: List[httpx.Request] = []

        with make_client(bird_handler(requests)) as client:
            receipt = client.deliver("+201016666348", artifact)

        assert [str(r.url) for r in requests] == [
            f"{API}{CHANNEL}/presigned-upload",
            UPLOAD_URL,
            f"{API}{CHANNEL}/messages",
        ]
        assert receipt.message_id == "msg-1"
        assert receipt.status == "accepted"
        assert receipt.media_url == MEDIA_URL

    def test_presign_payload_and_auth(self, artifact: Path) -> None:
        requests: List[httpx.Request] = []

        with make_client(bird_handler(requests)) as client:
            client.deliver("+201016666348", artifact)

        presign = requests[0]
        assert presign.headers["Authorization"] == "AccessKey secret-key"
        assert json.loads(presign.content) == {"contentType": "application/pdf"}

    def test_upload_is_multipart_without_auth(self, artifact: Path) -> None:
        """Verify the upload carries the form fields and file, but no key."""
        requests: List[httpx.Request] = []

        with make_client(bird_handler(requests)) as client:
            client.deliver("+201016666348", artifact)

        upload = requests[1]
        body = upload.read()
        assert "Authorization" not in upload.headers
        assert upload.headers["Content-Type"].startswith("multipart/form-data")
        assert b'name="key"' in body
        assert b"files/abc.pdf" in body
        assert b'name="policy"' in body
        assert b'name="file"; filename="BL-20250301.pdf"' in body
        assert b"Content-Type: application/pdf" in body

    def test_send_payload(self, artifact: Path) -> None:
        requests: List[httpx.Request] = []

        with make_client(bird_handler(requests)) as client:
            client.deliver("+201016666348", artifact)

        payload: Dict = json.loads(requests[2].content)
        assert payload == {
            "receiver": {
                "contacts": [
                    {"identifierKey": "phonenumber", "identifierValue": "+201016666348"},
                ]
            },
            "template": {
                "projectId": "proj-1",
                "version": "v1",
                "locale": "ar",
                "parameters": [{"type": "string", "key": "url", "value": MEDIA_URL}],
            },
        }

    def test_presign_failure(self, artifact: Path) -> None:
        requests: List[httpx.Request] = []

        with make_client(bird_handler(requests, presign_status=403)) as client:
            with pytest.raises(DeliveryError) as excinfo:
                client.deliver("+201016666348", artifact)

        assert excinfo.value.step is DeliveryStep.PRESIGN
        assert excinfo.value.status_code == 403
        assert len(requests) == 1

    def test_upload_failure_stops_before_send(self, artifact: Path) -> None:
        """Verify a storage rejection names the upload step and skips send.

        Real-world significance:
        - Sending a template whose link is dead would confuse the patient
        """
        requests: List[httpx.Request] = []

        with make_client(bird_handler(requests, upload_status=403)) as client:
            with pytest.raises(DeliveryError, match="upload failed: HTTP 403") as excinfo:
                client.deliver("+201016666348", artifact)

        assert excinfo.value.step is DeliveryStep.UPLOAD
        assert len(requests) == 2

    def test_send_failure(self, artifact: Path) -> None:
        requests: List[httpx.Request] = []

        with make_client(bird_handler(requests, send_status=422)) as client:
            with pytest.raises(DeliveryError) as excinfo:
                client.deliver("+201016666348", artifact)

        assert excinfo.value.step is DeliveryStep.SEND
        assert excinfo.value.stage == "delivery"

    def test_presign_missing_media_url(self, artifact: Path) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"uploadUrl": UPLOAD_URL})

        with make_client(handler) as client:
            with pytest.raises(DeliveryError, match="missing mediaUrl"):
                client.deliver("+201016666348", artifact)

    def test_network_error_is_wrapped(self, artifact: Path) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with make_client(handler) as client:
            with pytest.raises(DeliveryError) as excinfo:
                client.deliver("+201016666348", artifact)

        assert excinfo.value.step is DeliveryStep.PRESIGN

    def test_missing_artifact(self, tmp_test_dir: Path) -> None:
        with make_client(bird_handler([])) as client:
            with pytest.raises(DeliveryError) as excinfo:
                client.deliver("+201016666348", tmp_test_dir / "missing.pdf")

        assert excinfo.value.step is DeliveryStep.UPLOAD

    def test_from_config(self, default_config) -> None:
        with DeliveryClient.from_config(default_config) as client:
            assert client.channel_path == CHANNEL
            assert client.locale == "ar"
