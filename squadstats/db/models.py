"""SQLAlchemy ORM models for players, weapons and combat facts."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

# SQLite only autoincrements INTEGER primary keys
_BigId = BigInteger().with_variant(Integer(), "sqlite")


def utc_naive(value: datetime | None = None) -> datetime:
    """Timestamps are stored as naive UTC."""
    value = value or datetime.now(timezone.utc)
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=convention)


class Player(Base):
    __tablename__ = "players"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    steam_id: Mapped[str | None] = mapped_column(String(17), unique=True, nullable=True)
    eos_id: Mapped[str | None] = mapped_column(String(32), unique=True, nullable=True)
    last_known_name: Mapped[str] = mapped_column(String(100), nullable=False, default="Unknown")
    first_seen: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_naive)
    last_seen: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_naive)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_naive)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utc_naive, onupdate=utc_naive
    )

    def __repr__(self) -> str:
        return f"<Player id={self.id} steam_id={self.steam_id} eos_id={self.eos_id}>"


class Weapon(Base):
    __tablename__ = "weapons"

    id: Mapped[int] = mapped_column(_BigId, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)


class PlayerWounded(Base):
    """Short-lived wound row, consulted when the matching death arrives."""

    __tablename__ = "player_wounded"

    id: Mapped[int] = mapped_column(_BigId, primary_key=True, autoincrement=True)
    server_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    attacker_id: Mapped[int | None] = mapped_column(ForeignKey("players.id"), nullable=True)
    victim_id: Mapped[int | None] = mapped_column(ForeignKey("players.id"), nullable=True)
    weapon_id: Mapped[int | None] = mapped_column(ForeignKey("weapons.id"), nullable=True)
    damage: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    damage_type: Mapped[str] = mapped_column(String(16), nullable=False, default="environment")
    teamkill: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attacker_squad_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    victim_squad_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    attacker_team_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    victim_team_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_naive)

    __table_args__ = (
        Index("ix_player_wounded_victim_time", "victim_id", "timestamp"),
        Index("ix_player_wounded_created_at", "created_at"),
    )


class Kill(Base):
    __tablename__ = "kills"

    id: Mapped[int] = mapped_column(_BigId, primary_key=True, autoincrement=True)
    server_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    attacker_id: Mapped[int | None] = mapped_column(ForeignKey("players.id"), nullable=True)
    victim_id: Mapped[int | None] = mapped_column(ForeignKey("players.id"), nullable=True)
    weapon_id: Mapped[int | None] = mapped_column(ForeignKey("weapons.id"), nullable=True)
    teamkill: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_naive)

    attacker: Mapped[Player | None] = relationship(foreign_keys=[attacker_id])
    victim: Mapped[Player | None] = relationship(foreign_keys=[victim_id])
    weapon: Mapped[Weapon | None] = relationship()

    __table_args__ = (
        Index("ix_kills_attacker_time", "attacker_id", "timestamp"),
        Index("ix_kills_victim_time", "victim_id", "timestamp"),
    )


class Revive(Base):
    __tablename__ = "revives"

    id: Mapped[int] = mapped_column(_BigId, primary_key=True, autoincrement=True)
    server_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reviver_id: Mapped[int | None] = mapped_column(ForeignKey("players.id"), nullable=True)
    victim_id: Mapped[int | None] = mapped_column(ForeignKey("players.id"), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_naive)

    reviver: Mapped[Player | None] = relationship(foreign_keys=[reviver_id])
    victim: Mapped[Player | None] = relationship(foreign_keys=[victim_id])

    __table_args__ = (Index("ix_revives_reviver_time", "reviver_id", "timestamp"),)


class VerificationCode(Base):
    """Pending link request; the row is deleted once matched, cancelled or expired."""

    __tablename__ = "verification_codes"

    id: Mapped[int] = mapped_column(_BigId, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(8), unique=True, nullable=False)
    discord_id: Mapped[str] = mapped_column(String(32), nullable=False)
    interaction_token: Mapped[str | None] = mapped_column(String(255), nullable=True)
    application_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_naive)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class PlayerDiscordLink(Base):
    __tablename__ = "player_discord_links"

    player_id: Mapped[int] = mapped_column(ForeignKey("players.id"), primary_key=True)
    discord_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    linked_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_naive)
