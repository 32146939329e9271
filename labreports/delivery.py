"""
Deliver a report artifact to a patient over WhatsApp through the Bird API.

Three sequential calls:
  1. presign  POST /workspaces/{ws}/channels/{ch}/presigned-upload
  2. upload   POST <uploadUrl> multipart (uploadFormData fields + ``file``)
  3. send     POST /workspaces/{ws}/channels/{ch}/messages with the template

A failure at any step stops the remaining ones and raises DeliveryError
naming the step. The upload goes to a storage host that must not receive the
Bird access key, so it uses a separate client without the auth header.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

from .data_models import DeliveryReceipt
from .enums import DeliveryStep
from .exceptions import DeliveryError

LOG = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"


class DeliveryClient:
    """Bird WhatsApp template sender.

    Parameters
    ----------
    access_key, workspace_id, channel_id : str
        Bird credentials and channel routing.
    template_project_id, template_version : str
        Approved WhatsApp template carrying a ``url`` parameter.
    transport : httpx.BaseTransport, optional
        Injected transport (``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        access_key: str,
        workspace_id: str,
        channel_id: str,
        template_project_id: str,
        template_version: str,
        *,
        base_url: str = "https://api.bird.com",
        locale: str = "ar",
        presign_timeout: float = 30.0,
        upload_timeout: float = 60.0,
        send_timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.workspace_id = workspace_id
        self.channel_id = channel_id
        self.template_project_id = template_project_id
        self.template_version = template_version
        self.locale = locale
        self.presign_timeout = presign_timeout
        self.upload_timeout = upload_timeout
        self.send_timeout = send_timeout
        self._api = httpx.Client(
            base_url=base_url,
            headers={"Authorization": f"AccessKey {access_key}"},
            transport=transport,
        )
        self._storage = httpx.Client(transport=transport)

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "DeliveryClient":
        bird = config.get("bird", {})
        whatsapp = config.get("whatsapp", {})
        return cls(
            access_key=bird.get("access_key", ""),
            workspace_id=bird.get("workspace_id", ""),
            channel_id=bird.get("channel_id", ""),
            template_project_id=bird.get("template_project_id", ""),
            template_version=bird.get("template_version", ""),
            base_url=bird.get("base_url", "https://api.bird.com"),
            locale=bird.get("locale", "ar"),
            presign_timeout=whatsapp.get("presign_timeout_seconds", 30),
            upload_timeout=whatsapp.get("upload_timeout_seconds", 60),
            send_timeout=whatsapp.get("send_timeout_seconds", 30),
        )

    @property
    def channel_path(self) -> str:
        return f"/workspaces/{self.workspace_id}/channels/{self.channel_id}"

    def close(self) -> None:
        self._api.close()
        self._storage.close()

    def __enter__(self) -> "DeliveryClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ── Public API ────────────────────────────────────────────────────────────

    def deliver(self, phone_e164: str, artifact_path: Path) -> DeliveryReceipt:
        """Upload ``artifact_path`` and send it to ``phone_e164``.

        Raises
        ------
        DeliveryError
            Carrying the failing step and the underlying message.
        """
        artifact_path = Path(artifact_path)
        LOG.info("Sending WhatsApp template to %s with PDF: %s", phone_e164, artifact_path)

        slot = self.request_upload_slot()
        self.upload(slot, artifact_path)
        receipt = self.send_template(phone_e164, slot["mediaUrl"])

        LOG.info(
            "WhatsApp template sent successfully to %s. Message ID: %s",
            phone_e164,
            receipt.message_id,
        )
        return receipt

    def request_upload_slot(self) -> Dict[str, Any]:
        LOG.info("Getting presigned upload URL from Bird...")
        data = self._post_json(
            DeliveryStep.PRESIGN,
            f"{self.channel_path}/presigned-upload",
            {"contentType": PDF_CONTENT_TYPE},
            self.presign_timeout,
        )
        for key in ("uploadUrl", "mediaUrl"):
            if not data.get(key):
                raise DeliveryError(DeliveryStep.PRESIGN, f"response is missing {key}")
        form = data.get("uploadFormData") or {}
        if not isinstance(form, dict):
            raise DeliveryError(DeliveryStep.PRESIGN, "uploadFormData is not an object")
        return {"uploadUrl": data["uploadUrl"], "mediaUrl": data["mediaUrl"], "uploadFormData": form}

    def upload(self, slot: Dict[str, Any], artifact_path: Path) -> None:
        LOG.info("Uploading PDF to Bird storage...")
        form = {key: str(value) for key, value in slot["uploadFormData"].items()}
        try:
            with artifact_path.open("rb") as handle:
                resp = self._storage.post(
                    slot["uploadUrl"],
                    data=form,
                    files={"file": (artifact_path.name, handle, PDF_CONTENT_TYPE)},
                    timeout=self.upload_timeout,
                )
            resp.raise_for_status()
        except OSError as exc:
            raise DeliveryError(DeliveryStep.UPLOAD, f"cannot read {artifact_path}: {exc}") from exc
        except httpx.HTTPStatusError as exc:
            raise DeliveryError(
                DeliveryStep.UPLOAD,
                f"HTTP {exc.response.status_code}: {exc.response.text[:500]}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise DeliveryError(DeliveryStep.UPLOAD, str(exc)) from exc
        LOG.info("PDF uploaded to Bird successfully")

    def send_template(self, phone_e164: str, media_url: str) -> DeliveryReceipt:
        LOG.info("Sending WhatsApp template...")
        payload = {
            "receiver": {
                "contacts": [
                    {"identifierKey": "phonenumber", "identifierValue": phone_e164},
                ]
            },
            "template": {
                "projectId": self.template_project_id,
                "version": self.template_version,
                "locale": self.locale,
                "parameters": [
                    {"type": "string", "key": "url", "value": media_url},
                ],
            },
        }
        data = self._post_json(
            DeliveryStep.SEND, f"{self.channel_path}/messages", payload, self.send_timeout
        )
        message_id = data.get("id")
        if not message_id:
            raise DeliveryError(DeliveryStep.SEND, "response is missing the message id")
        return DeliveryReceipt(
            message_id=str(message_id),
            status=str(data.get("status", "")),
            media_url=media_url,
        )

    # ── Internals ─────────────────────────────────────────────────────────────

    def _post_json(
        self, step: DeliveryStep, path: str, payload: Dict[str, Any], timeout: float
    ) -> Dict[str, Any]:
        try:
            resp = self._api.post(path, json=payload, timeout=timeout)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as exc:
            raise DeliveryError(
                step,
                f"HTTP {exc.response.status_code}: {exc.response.text[:500]}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise DeliveryError(step, str(exc)) from exc
        except ValueError as exc:
            raise DeliveryError(step, f"invalid JSON response: {exc}") from exc
        if not isinstance(data, dict):
            raise DeliveryError(step, "unexpected response body")
        return data
