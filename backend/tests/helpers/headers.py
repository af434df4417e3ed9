from typing import Dict


def auth_headers(user_id: str, role: str) -> Dict[str, str]:
    """Identity headers as the gateway forwards them."""
    return {"X-User-Id": user_id, "X-User-Role": role}
