"""
客户与关键事件数据库模型
"""
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, Numeric, String, Text

from .base import Base


class CustomerModel(Base):
    __tablename__ = "customers"

    id = Column(String(64), primary_key=True, comment="客户ID")
    name = Column(String(200), nullable=True, comment="客户名称")
    total_spent = Column(Numeric(precision=15, scale=2), nullable=False, default=0, comment="累计消费")

    def __repr__(self):
        return f"<CustomerModel(id='{self.id}', total_spent={self.total_spent})>"


class CriticalEventModel(Base):
    """需要人工复核的异常（只追加）"""
    __tablename__ = "critical_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    category = Column(String(50), nullable=False, index=True, comment="类别")
    reason = Column(String(200), nullable=False, comment="原因")
    data = Column(JSON, nullable=False, default=dict, comment="上下文数据")
    resolved = Column(Boolean, nullable=False, default=False, index=True, comment="是否已处理")
    resolved_at = Column(DateTime(timezone=True), nullable=True, comment="处理时间")
    comment = Column(Text, nullable=True, comment="处理备注")
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
        comment="创建时间",
    )

    def __repr__(self):
        return f"<CriticalEventModel(id={self.id}, category='{self.category}', reason='{self.reason}')>"
