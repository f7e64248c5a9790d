"""Actor profile summary used to render a login success message."""

from typing import Any, Dict, Optional

from pydantic import BaseModel


class Profile(BaseModel):
    did: str
    handle: str
    display_name: str
    avatar: Optional[str] = None
    description: Optional[str] = None

    @staticmethod
    def from_xrpc(body: Dict[str, Any]) -> "Profile":
        """Build from an ``app.bsky.actor.getProfile`` response body.

        The display name falls back to the handle when the actor has none.
        """
        handle = body.get("handle", "")
        return Profile(
            did=body.get("did", ""),
            handle=handle,
            display_name=body.get("displayName") or handle,
            avatar=body.get("avatar"),
            description=body.get("description"),
        )
