"""
Per-process collaborators handed to every request.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

import httpx
from fastapi import Request
from pymongo import MongoClient

from database import Store

if TYPE_CHECKING:
    from auth import TokenVerifier
    from media import MediaUploader


@dataclass
class ServiceContext:
    store: Store
    verifier: "TokenVerifier"
    media: "MediaUploader"
    mongo: Optional[MongoClient] = None
    http: Optional[httpx.Client] = field(default=None, repr=False)

    def close(self) -> None:
        if self.http is not None:
            self.http.close()
        if self.mongo is not None:
            self.mongo.close()


def get_context(request: Request) -> ServiceContext:
    return request.app.state.context


def get_store(request: Request) -> Store:
    return request.app.state.context.store
