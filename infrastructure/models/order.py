"""
订单数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型

账本、状态历史与在途交易以 JSON 列整体存储，随订单行一起加锁读写；
在途交易的状态与开始时间冗余成普通列，供卡单扫描走索引。
"""
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Index, Integer, JSON, Numeric, String

from .base import Base


class OrderModel(Base):
    __tablename__ = "orders"

    id = Column(String(64), primary_key=True, comment="订单ID")
    order_number = Column(Integer, unique=True, nullable=False, index=True, comment="订单号")
    customer_id = Column(String(64), nullable=True, index=True, comment="客户ID")
    delivery_method = Column(String(50), nullable=False, comment="配送方式")
    total_amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="订单金额")

    current_status = Column(String(50), nullable=False, default="draft", index=True, comment="订单状态")
    status_history = Column(JSON, nullable=False, default=list, comment="状态历史")

    financial_state = Column(String(50), nullable=False, default="unpaid", comment="财务状态（推导值）")
    total_paid = Column(Numeric(precision=15, scale=2), nullable=False, default=0, comment="累计收款")
    total_refunded = Column(Numeric(precision=15, scale=2), nullable=False, default=0, comment="累计退款")
    event_history = Column(JSON, nullable=False, default=list, comment="账本条目")
    online_transaction = Column(JSON, nullable=True, comment="在途在线交易")

    online_tx_status = Column(String(20), nullable=True, comment="在途交易状态（冗余）")
    online_tx_started_at = Column(DateTime(timezone=True), nullable=True, comment="在途交易开始时间（冗余）")

    version = Column(Integer, nullable=False, default=0, comment="乐观锁版本号")

    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="创建时间",
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="更新时间",
    )

    __table_args__ = (
        Index("ix_orders_online_tx", "online_tx_status", "online_tx_started_at"),
    )

    def __repr__(self):
        return (
            f"<OrderModel(id='{self.id}', number={self.order_number}, "
            f"status='{self.current_status}', version={self.version})>"
        )
