# ens_assessment/entities.py
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

from ens_assessment.models import utcnow

Base = declarative_base()


class AnswerRecordRow(Base):
    """
    One immutable version of a finalized answer. Rows are only ever inserted:
    edits and deletes append a new version, tombstones included.
    """

    __tablename__ = "answer_record"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    question_id: Mapped[str] = mapped_column(String(128), nullable=False)
    domain: Mapped[str] = mapped_column(String(64), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # complete | deleted
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="complete")

    fields: Mapped[dict[str, object]] = mapped_column(JSON, nullable=False, default=dict)
    confidences: Mapped[dict[str, float]] = mapped_column(JSON, nullable=False, default=dict)
    completeness_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # created_at is carried over from version 1; updated_at is this version's write time
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    tombstoned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    confirm_token: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        UniqueConstraint("question_id", "version", name="uq_answer_record_question_version"),
        Index("ix_answer_record_question_id", "question_id"),
        Index("ix_answer_record_domain", "domain"),
    )
