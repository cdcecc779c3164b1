# sessionledger/daemon/models.py
"""
Request bodies accepted by the daemon's HTTP API.

Responses are plain dicts built from the core dataclasses (ChainRecord,
SessionSeal) so that what goes over the wire is exactly what lands on disk.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class OpenSessionRequest(BaseModel):
    """
    Attach a tool to a ledger.

    Attributes:
        external_id: The tool's own session identifier. Reusing one resumes its ledger.
        client: Name of the connecting tool, recorded as-is.
    """

    external_id: Optional[str] = None
    client: Optional[str] = None


class StartRequest(BaseModel):
    client: Optional[str] = None
    task_type: Optional[str] = None
    project: Optional[str] = None
    title: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class EventRequest(BaseModel):
    type: str = "milestone"
    data: Dict[str, Any] = Field(default_factory=dict)


class HeartbeatRequest(BaseModel):
    data: Dict[str, Any] = Field(default_factory=dict)


class EndRequest(BaseModel):
    title: Optional[str] = None
