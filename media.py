"""
Upload proxy to Cloudinary.
"""

import hashlib
import logging
import time
from typing import Dict, Optional, Protocol

import httpx

from errors import UpstreamError

logger = logging.getLogger(__name__)

CLOUDINARY_API = "https://api.cloudinary.com/v1_1"


class MediaUploader(Protocol):
    def upload(self, filename: str, content: bytes, content_type: Optional[str] = None) -> Dict[str, str]: ...


def sign_params(params: Dict[str, str], api_secret: str) -> str:
    """Cloudinary signature: SHA-1 of sorted ``k=v`` pairs joined by ``&`` plus the secret."""
    payload = "&".join(f"{k}={params[k]}" for k in sorted(params))
    return hashlib.sha1((payload + api_secret).encode("utf-8")).hexdigest()


class CloudinaryClient:
    def __init__(self, cloud_name: str, api_key: str, api_secret: str, http: httpx.Client):
        self.cloud_name = cloud_name
        self.api_key = api_key
        self.api_secret = api_secret
        self.http = http

    @property
    def upload_url(self) -> str:
        return f"{CLOUDINARY_API}/{self.cloud_name}/auto/upload"

    def upload(self, filename: str, content: bytes, content_type: Optional[str] = None) -> Dict[str, str]:
        if not (self.cloud_name and self.api_key and self.api_secret):
            raise UpstreamError("Media host is not configured")

        params = {"timestamp": str(int(time.time()))}
        data = {**params, "api_key": self.api_key, "signature": sign_params(params, self.api_secret)}
        files = {"file": (filename, content, content_type or "application/octet-stream")}
        try:
            response = self.http.post(self.upload_url, data=data, files=files)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Upload of %s failed: %s", filename, e)
            raise UpstreamError("Upload to media host failed")

        body = response.json()
        logger.info("Uploaded %s as %s", filename, body.get("public_id"))
        return {"secure_url": body["secure_url"], "public_id": body["public_id"]}
