from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import BaseModel, utcnow

NODE_TYPE_START = "start"
NODE_TYPE_API = "api"
NODE_TYPE_MODEL = "model"
NODE_TYPE_CONDITION = "condition"
NODE_TYPE_STRATEGY_TRIGGER = "strategy_trigger"
NODE_TYPE_TELEGRAM_MESSAGE = "telegram_message"
NODE_TYPE_CHOICES = (
    NODE_TYPE_START,
    NODE_TYPE_API,
    NODE_TYPE_MODEL,
    NODE_TYPE_CONDITION,
    NODE_TYPE_STRATEGY_TRIGGER,
    NODE_TYPE_TELEGRAM_MESSAGE,
)
# Node types whose result is never stored under an output variable.
NODE_TYPES_WITHOUT_OUTPUT = {
    NODE_TYPE_START,
    NODE_TYPE_CONDITION,
    NODE_TYPE_TELEGRAM_MESSAGE,
}

HANDLE_DEFAULT = "default"
HANDLE_TRUE = "true"
HANDLE_FALSE = "false"
HANDLE_CHOICES = (HANDLE_DEFAULT, HANDLE_TRUE, HANDLE_FALSE)

TRIGGER_KIND_CRON = "cron"
TRIGGER_KIND_MANUAL = "manual"
TRIGGER_KIND_CHOICES = (TRIGGER_KIND_CRON, TRIGGER_KIND_MANUAL)

EXECUTION_STATUS_RUNNING = "running"
EXECUTION_STATUS_SUCCESS = "success"
EXECUTION_STATUS_FAILED = "failed"
EXECUTION_TERMINAL_STATUSES = (EXECUTION_STATUS_SUCCESS, EXECUTION_STATUS_FAILED)


class Strategy(BaseModel):
    __tablename__ = "strategies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    cron: Mapped[str | None] = mapped_column(String(128), nullable=True)
    triggers_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_scheduled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    nodes: Mapped[list["FlowNode"]] = relationship(
        "FlowNode",
        back_populates="strategy",
        cascade="all, delete-orphan",
        order_by="FlowNode.id",
    )
    edges: Mapped[list["FlowEdge"]] = relationship(
        "FlowEdge",
        back_populates="strategy",
        cascade="all, delete-orphan",
        order_by="FlowEdge.id",
    )
    executions: Mapped[list["StrategyExecution"]] = relationship(
        "StrategyExecution", back_populates="strategy"
    )


class FlowNode(BaseModel):
    __tablename__ = "flow_nodes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    strategy_id: Mapped[int] = mapped_column(
        ForeignKey("strategies.id"), nullable=False, index=True
    )
    node_type: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    config_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    output_variable: Mapped[str | None] = mapped_column(String(128), nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    required: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    order_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    strategy: Mapped[Strategy] = relationship("Strategy", back_populates="nodes")


class FlowEdge(BaseModel):
    __tablename__ = "flow_edges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    strategy_id: Mapped[int] = mapped_column(
        ForeignKey("strategies.id"), nullable=False, index=True
    )
    source_node_id: Mapped[int] = mapped_column(
        ForeignKey("flow_nodes.id"), nullable=False, index=True
    )
    source_handle: Mapped[str] = mapped_column(
        String(32), default=HANDLE_DEFAULT, nullable=False
    )
    target_node_id: Mapped[int] = mapped_column(
        ForeignKey("flow_nodes.id"), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    strategy: Mapped[Strategy] = relationship("Strategy", back_populates="edges")


class StrategyExecution(BaseModel):
    __tablename__ = "strategy_executions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    strategy_id: Mapped[int] = mapped_column(
        ForeignKey("strategies.id"), nullable=False, index=True
    )
    trigger_kind: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), default=EXECUTION_STATUS_RUNNING, nullable=False, index=True
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    strategy: Mapped[Strategy] = relationship("Strategy", back_populates="executions")
    step_logs: Mapped[list["FlowStepLog"]] = relationship(
        "FlowStepLog",
        back_populates="execution",
        order_by="FlowStepLog.id",
    )


class FlowStepLog(BaseModel):
    __tablename__ = "flow_step_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    execution_id: Mapped[int] = mapped_column(
        ForeignKey("strategy_executions.id"), nullable=False, index=True
    )
    node_id: Mapped[int] = mapped_column(
        ForeignKey("flow_nodes.id"), nullable=False, index=True
    )
    node_type: Mapped[str] = mapped_column(String(32), nullable=False)
    node_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    input_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    output_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    execution: Mapped[StrategyExecution] = relationship(
        "StrategyExecution", back_populates="step_logs"
    )


class SentMessage(BaseModel):
    __tablename__ = "sent_messages"
    __table_args__ = (
        UniqueConstraint("fingerprint", name="uq_sent_messages_fingerprint"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    fingerprint: Mapped[str] = mapped_column(String(128), nullable=False)
    chat_id: Mapped[str] = mapped_column(String(64), nullable=False)
    message_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    alert_message_id: Mapped[int | None] = mapped_column(
        Integer, nullable=True, index=True
    )
    send_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    reaction: Mapped[str | None] = mapped_column(String(32), nullable=True)
    first_sent_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    last_sent_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class IntegrationSetting(BaseModel):
    __tablename__ = "integration_settings"
    __table_args__ = (
        UniqueConstraint("provider", "key", name="uq_integration_provider_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    key: Mapped[str] = mapped_column(String(64), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )
