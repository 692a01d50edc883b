import json
import logging
from typing import Optional

import requests

from errors import ContentStoreError

logger = logging.getLogger("launchpad.content_store")


class PinataContentStore:
    """Pins token images and metadata documents; produces the descriptor ``uri``."""

    def __init__(
        self,
        jwt: str,
        gateway: str = "https://gateway.pinata.cloud/ipfs",
        api_url: str = "https://api.pinata.cloud",
        timeout: float = 60,
        session: Optional[requests.Session] = None,
    ):
        if not jwt:
            raise ContentStoreError("PINATA_JWT must be set to upload token metadata")
        self.gateway = gateway.rstrip("/")
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Authorization": f"Bearer {jwt}"})

    @classmethod
    def from_settings(cls, settings) -> "PinataContentStore":
        return cls(
            settings.pinata_jwt or "",
            gateway=settings.pinata_gateway,
            api_url=settings.pinata_api_url,
            timeout=settings.pinata_timeout_seconds,
        )

    def _post(self, path: str, **kwargs) -> str:
        url = f"{self.api_url}{path}"
        try:
            resp = self.session.post(url, timeout=self.timeout, **kwargs)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("pinata_upload_failed url=%s error=%s", url, exc, exc_info=True)
            raise ContentStoreError(f"Pinata upload to {path} failed: {exc}") from exc
        cid = data.get("IpfsHash")
        if not cid:
            raise ContentStoreError(f"Pinata response missing IpfsHash: {data}")
        logger.info("pinata_upload_ok path=%s cid=%s", path, cid)
        return cid

    def upload_file(self, data: bytes, filename: str = "image", content_type: str = "application/octet-stream") -> str:
        files = {"file": (filename, data, content_type)}
        metadata = {"pinataMetadata": json.dumps({"name": filename})}
        return self._post("/pinning/pinFileToIPFS", files=files, data=metadata)

    def upload_json(self, content: dict, name: str = "meta_data_JSON.json") -> str:
        body = {"pinataContent": content, "pinataMetadata": {"name": name}}
        return self._post("/pinning/pinJSONToIPFS", json=body)

    def gateway_url(self, cid: str) -> str:
        return f"{self.gateway}/{cid}"

    def pin_token_metadata(
        self,
        name: str,
        symbol: str,
        description: str,
        image: bytes,
        image_filename: str = "image",
        image_content_type: str = "application/octet-stream",
    ) -> str:
        """Pin the image, then the JSON document pointing at it; returns the document URL."""
        if not name or not symbol or not description or not image:
            raise ContentStoreError("name, symbol, description and image are all required")
        image_cid = self.upload_file(image, image_filename, image_content_type)
        document = {
            "name": name,
            "symbol": symbol,
            "description": description,
            "image": self.gateway_url(image_cid),
        }
        return self.gateway_url(self.upload_json(document))
