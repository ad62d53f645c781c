# src/nostr_stage/models/content.py
"""Replaceable records that are published as Nostr events."""

from __future__ import annotations

from sqlalchemy import ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from nostr_stage.db.session import Base


class Resource(Base):
    """A single piece of content (document or video).

    The primary key doubles as the event's ``d`` tag, so every republish
    replaces the previously published version for readers.
    """

    __tablename__ = "resource"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("user_account.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    note_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    video_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    owner = relationship("User", back_populates="resources")
    lessons = relationship("Lesson", back_populates="resource")


class Course(Base):
    """An ordered collection of lessons published as a curation set."""

    __tablename__ = "course"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("user_account.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    note_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    owner = relationship("User", back_populates="courses")
    lessons = relationship(
        "Lesson",
        back_populates="course",
        order_by="Lesson.index",
        cascade="all, delete-orphan",
    )


class Lesson(Base):
    """Position of a resource inside a course."""

    __tablename__ = "lesson"
    __table_args__ = (UniqueConstraint("course_id", "index", name="uq_lesson_course_index"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    course_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("course.id", ondelete="CASCADE"),
        nullable=False,
    )
    resource_id: Mapped[str | None] = mapped_column(
        String(64),
        ForeignKey("resource.id", ondelete="SET NULL"),
        nullable=True,
    )
    index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    course = relationship("Course", back_populates="lessons")
    resource = relationship("Resource", back_populates="lessons")
