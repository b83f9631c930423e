from dataclasses import dataclass, field
from typing import Dict, Optional


@dataclass
class RequestContext:
    """What the service layer needs to know about the caller of a request."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    headers: Dict[str, Optional[str]] = field(default_factory=dict)
