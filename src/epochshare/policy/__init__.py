"""Protocol policy — constants loaded from config/."""

from epochshare.policy.resolver import PolicyResolver

__all__ = ["PolicyResolver"]
