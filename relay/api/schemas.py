"""
Pydantic schemas mirroring the REST inspection contract.
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class HealthModel(BaseModel):
    status: str = "ok"
    profile: str = "default"
    sessions: int = 0
    peers: int = 0


class SessionSummaryModel(BaseModel):
    sessionId: str
    members: int = 0
    maxMembers: int = 2
    lastActivity: float = 0.0


class SessionListModel(BaseModel):
    sessions: List[SessionSummaryModel] = Field(default_factory=list)
    peers: int = 0


class PeerModel(BaseModel):
    peerId: str
    sessionId: str
    role: str = "unassigned"
    connectionState: str = "idle"
    joinedAt: float = 0.0


class NegotiationModel(BaseModel):
    peers: List[str]
    state: str = "idle"
    offerer: Optional[str] = None
    pendingOfferId: Optional[str] = None
    pendingCandidates: int = 0
    connectedReports: List[str] = Field(default_factory=list)
    rounds: int = 0


class SessionDetailModel(BaseModel):
    sessionId: str
    maxMembers: int = 2
    createdAt: float = 0.0
    lastActivity: float = 0.0
    peers: List[PeerModel] = Field(default_factory=list)
    negotiations: List[NegotiationModel] = Field(default_factory=list)
