from typing import Dict, Any, List, Optional

from pydantic import BaseModel, Field


class ConditionModel(BaseModel):
    """Model for the wire representation of a condition"""
    type: str = Field(..., min_length=1, description="Condition type id")
    parameterValues: Dict[str, Any] = Field(default_factory=dict, description="Parameter values, may nest conditions")


class ClusterNode(BaseModel):
    """Model for one node of the search-engine cluster as advertised by the context server"""
    hostName: Optional[str] = Field(None, description="Host name reported by the engine node")
    publicHostAddress: Optional[str] = Field(None, description="Public context server address")
    publicPort: Optional[int] = Field(None, description="Public context server port")
    secureHostAddress: Optional[str] = Field(None, description="Secure context server address")
    securePort: Optional[int] = Field(None, description="Secure context server port")
    master: bool = Field(default=False, description="Node is master eligible")
    data: bool = Field(default=False, description="Node holds data")
    cpuLoad: Optional[float] = Field(None, description="Process CPU usage in percent")
    loadAverage: List[float] = Field(default_factory=list, description="1, 5 and 15 minute load average")
    uptime: Optional[int] = Field(None, description="JVM uptime in milliseconds")


class SavedQueryModel(BaseModel):
    """Model for a stored percolator query document"""
    itemType: str = Field(default=".percolator", description="Reserved percolator kind")
    query: Dict[str, Any] = Field(..., description="Search-engine query clause")
