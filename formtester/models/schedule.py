from sqlmodel import SQLModel, Field, Column, JSON
from sqlalchemy import DateTime
from sqlalchemy.ext.mutable import MutableDict, MutableList
from datetime import datetime
from typing import Any, Optional
import uuid

from formtester.utils.time import utcnow


class Schedule(SQLModel, table=True):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex, primary_key=True)
    name: str
    description: Optional[str] = None
    url: str = Field(index=True)
    form_config: dict[str, Any] = Field(default_factory=dict, sa_column=Column(MutableDict.as_mutable(JSON)))
    user_data: dict[str, Any] = Field(default_factory=dict, sa_column=Column(MutableDict.as_mutable(JSON)))
    frequency: str  # hourly, daily, weekly, monthly, custom
    custom_cron_expression: Optional[str] = None
    specific_time: Optional[str] = None  # HH:MM
    cron_expression: str
    active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    last_run_time: Optional[datetime] = Field(default=None, sa_type=DateTime)
    next_run_time: Optional[datetime] = Field(default=None, index=True, sa_type=DateTime)
    runs: list[str] = Field(default_factory=list, sa_column=Column(MutableList.as_mutable(JSON)))
    stats_total: int = 0
    stats_success: int = 0
    stats_failed: int = 0
    last_test_id: Optional[str] = None
    last_test_status: Optional[str] = None
    rule_arn: Optional[str] = None
    version: int = 1
