"""Marketplace records consumed by the payment core.

Projects, proposals, contracts, milestones and reviews are owned by the
marketplace CRUD layer. The payment core reads them and only moves milestone
and contract statuses along the payment lifecycle.
"""
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import CheckConstraint, Enum as SqlEnum, ForeignKey, Index, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class ProjectStatus(str, PyEnum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ProposalStatus(str, PyEnum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    WITHDRAWN = "WITHDRAWN"


class ContractStatus(str, PyEnum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"


class MilestoneStatus(str, PyEnum):
    """Possible statuses for a contract milestone."""

    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    PAID = "PAID"
    REFUNDED = "REFUNDED"
    REJECTED = "REJECTED"


class ReviewStatus(str, PyEnum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    HIDDEN = "HIDDEN"


class Project(Base):
    """A job posted by a client."""

    __tablename__ = "projects"

    client_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[ProjectStatus] = mapped_column(SqlEnum(ProjectStatus), nullable=False, default=ProjectStatus.OPEN)


class Proposal(Base):
    """A freelancer's bid on a project."""

    __tablename__ = "proposals"

    project_id: Mapped[int] = mapped_column(ForeignKey("projects.id"), nullable=False, index=True)
    freelancer_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    status: Mapped[ProposalStatus] = mapped_column(
        SqlEnum(ProposalStatus), nullable=False, default=ProposalStatus.PENDING
    )


class Contract(Base):
    """Agreement between a client and a freelancer, paid milestone by milestone."""

    __tablename__ = "contracts"
    __table_args__ = (
        CheckConstraint("total_amount > 0", name="ck_contract_positive_total"),
        Index("ix_contracts_status", "status"),
    )

    client_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    freelancer_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    project_id: Mapped[int] = mapped_column(ForeignKey("projects.id"), nullable=False, index=True)
    proposal_id: Mapped[int | None] = mapped_column(ForeignKey("proposals.id"), nullable=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    status: Mapped[ContractStatus] = mapped_column(
        SqlEnum(ContractStatus), nullable=False, default=ContractStatus.ACTIVE
    )

    milestones = relationship("Milestone", back_populates="contract", order_by="Milestone.idx")


class Milestone(Base):
    """A contract deliverable with its own amount and approval state."""

    __tablename__ = "milestones"
    __table_args__ = (
        UniqueConstraint("contract_id", "idx", name="uq_milestone_idx"),
        CheckConstraint("amount > 0", name="ck_milestone_positive_amount"),
        CheckConstraint("idx > 0", name="ck_milestone_positive_idx"),
    )

    contract_id: Mapped[int] = mapped_column(ForeignKey("contracts.id"), nullable=False, index=True)
    idx: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    status: Mapped[MilestoneStatus] = mapped_column(
        SqlEnum(MilestoneStatus), nullable=False, default=MilestoneStatus.PENDING
    )

    contract = relationship("Contract", back_populates="milestones")


class Review(Base):
    """Rating left by one party of a contract about the other."""

    __tablename__ = "reviews"
    __table_args__ = (
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_review_rating_range"),
        UniqueConstraint("contract_id", "reviewer_id", name="uq_review_contract_reviewer"),
    )

    contract_id: Mapped[int] = mapped_column(ForeignKey("contracts.id"), nullable=False, index=True)
    reviewer_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    reviewee_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[ReviewStatus] = mapped_column(
        SqlEnum(ReviewStatus), nullable=False, default=ReviewStatus.PUBLISHED
    )
