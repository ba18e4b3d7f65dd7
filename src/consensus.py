"""Scrim score reporting and consensus.

Every participant reports the final score on their own. A score becomes
official once ``CONSENSUS_QUORUM`` reports agree on the exact same
(team A, team B) pair, however many players are on the roster. Reports are
append-only and a reached consensus is never taken back by later reports.
"""

from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError

CONSENSUS_QUORUM = 2
SCRIM_STATUSES = ("waiting", "ready_check", "in_progress", "scoring", "finalized", "expired", "cancelled")
# finalized scrims still take late reports; they just can't change the result
REPORTING_STATUSES = ("scoring", "finalized")

metadata = MetaData()

scrims = Table(
    "scrims",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("title", String(200)),
    Column("status", String(20), nullable=False, default="scoring"),
    Column("team_a_score", Integer),
    Column("team_b_score", Integer),
    Column("winner", String(10)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("finalized_at", DateTime(timezone=True)),
    CheckConstraint(
        "status IN (" + ", ".join(f"'{s}'" for s in SCRIM_STATUSES) + ")",
        name="ck_scrims_status",
    ),
)

scrim_players = Table(
    "scrim_players",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("scrim_id", String(64), ForeignKey("scrims.id", ondelete="CASCADE"), nullable=False),
    Column("user_id", String(64), nullable=False),
    Column("user_name", String(100), nullable=False),
    Column("team", String(10)),
    UniqueConstraint("scrim_id", "user_id", name="uq_scrim_players_scrim_user"),
)

score_submissions = Table(
    "scrim_score_submissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("scrim_id", String(64), ForeignKey("scrims.id", ondelete="CASCADE"), nullable=False),
    Column("user_id", String(64), nullable=False),
    Column("user_name", String(100)),
    Column("team_a_score", Integer, nullable=False),
    Column("team_b_score", Integer, nullable=False),
    Column("submitted_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("team_a_score >= 0", name="ck_scores_team_a_non_negative"),
    CheckConstraint("team_b_score >= 0", name="ck_scores_team_b_non_negative"),
    UniqueConstraint("scrim_id", "user_id", name="uq_scores_scrim_user"),
    Index("idx_scrim_scores_scrim_id", "scrim_id"),
)


class ConsensusError(Exception):
    """Base class for rejected score-reporting operations."""


class ScrimNotFound(ConsensusError):
    pass


class InvalidSubmission(ConsensusError):
    pass


class NotAParticipant(InvalidSubmission):
    pass


class DuplicateSubmission(ConsensusError):
    pass


@dataclass(frozen=True)
class ScoreSubmission:
    scrim_id: str
    user_id: str
    team_a_score: int
    team_b_score: int
    user_name: str | None = None
    submitted_at: datetime | None = None
    id: int | None = None

    @property
    def score(self) -> tuple:
        return (self.team_a_score, self.team_b_score)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "scrim_id": self.scrim_id,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "team_a_score": self.team_a_score,
            "team_b_score": self.team_b_score,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
        }


@dataclass(frozen=True)
class ConsensusResult:
    has_consensus: bool
    team_a_score: int | None
    team_b_score: int | None
    submission_count: int
    player_count: int

    @property
    def status(self) -> str:
        if self.has_consensus:
            return "consensus"
        if self.submission_count > 0:
            return "reporting"
        return "unreported"

    @property
    def winner(self) -> str | None:
        if not self.has_consensus:
            return None
        if self.team_a_score > self.team_b_score:
            return "team_a"
        if self.team_b_score > self.team_a_score:
            return "team_b"
        return "draw"

    def to_dict(self) -> dict:
        return {
            "has_consensus": self.has_consensus,
            "team_a_score": self.team_a_score,
            "team_b_score": self.team_b_score,
            "submission_count": self.submission_count,
            "player_count": self.player_count,
            "status": self.status,
            "winner": self.winner,
        }


def _submission_order(submission: ScoreSubmission) -> tuple:
    # submissions without a timestamp or id sort last, keeping input order
    return (
        submission.submitted_at is None,
        submission.submitted_at or datetime.min,
        submission.id is None,
        submission.id or 0,
    )


def resolve_consensus(submissions, player_count: int) -> ConsensusResult:
    """Decide the agreed score from a scrim's full set of reports.

    Reports are grouped by exact (team A, team B) pair and replayed in
    submission order. The first pair to collect ``CONSENSUS_QUORUM``
    reports is the agreed score. At that moment it is the largest group,
    and any group that later grows past it does not overturn it. This also
    settles ties between equally large groups: the one that got there first
    wins.
    """
    ordered = sorted(submissions, key=_submission_order)
    counts = {}
    agreed = None
    for submission in ordered:
        counts[submission.score] = counts.get(submission.score, 0) + 1
        if agreed is None and counts[submission.score] >= CONSENSUS_QUORUM:
            agreed = submission.score

    if agreed is None:
        return ConsensusResult(
            has_consensus=False,
            team_a_score=None,
            team_b_score=None,
            submission_count=len(ordered),
            player_count=player_count,
        )
    return ConsensusResult(
        has_consensus=True,
        team_a_score=agreed[0],
        team_b_score=agreed[1],
        submission_count=len(ordered),
        player_count=player_count,
    )


def ensure_scrim_schema(engine) -> None:
    metadata.create_all(engine)


def create_scrim(engine, scrim_id: str, title: str | None = None, status: str = "scoring") -> None:
    if status not in SCRIM_STATUSES:
        raise ValueError(f"Unknown scrim status: {status}")
    with engine.begin() as conn:
        conn.execute(
            insert(scrims).values(
                id=scrim_id,
                title=title,
                status=status,
                created_at=datetime.now(timezone.utc),
            )
        )


def add_player(engine, scrim_id: str, user_id: str, user_name: str, team: str | None = None) -> None:
    if team not in (None, "team_a", "team_b"):
        raise ValueError(f"Unknown team: {team}")
    with engine.begin() as conn:
        if conn.execute(select(scrims.c.id).where(scrims.c.id == scrim_id)).first() is None:
            raise ScrimNotFound(scrim_id)
        conn.execute(
            insert(scrim_players).values(scrim_id=scrim_id, user_id=user_id, user_name=user_name, team=team)
        )


def _row_to_submission(row) -> ScoreSubmission:
    return ScoreSubmission(
        id=row.id,
        scrim_id=row.scrim_id,
        user_id=row.user_id,
        user_name=row.user_name,
        team_a_score=row.team_a_score,
        team_b_score=row.team_b_score,
        submitted_at=row.submitted_at,
    )


def _load_submissions(conn, scrim_id: str) -> list[ScoreSubmission]:
    query = (
        select(score_submissions)
        .where(score_submissions.c.scrim_id == scrim_id)
        .order_by(score_submissions.c.submitted_at, score_submissions.c.id)
    )
    return [_row_to_submission(row) for row in conn.execute(query)]


def load_submissions(engine, scrim_id: str) -> list[ScoreSubmission]:
    with engine.connect() as conn:
        return _load_submissions(conn, scrim_id)


def _validate_score(value, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidSubmission(f"{label} must be a whole number")
    if value < 0:
        raise InvalidSubmission(f"{label} cannot be negative")
    return value


def evaluate_consensus(engine, scrim_id: str) -> ConsensusResult:
    """Read the roster size and all reports for a scrim and resolve them."""
    with engine.connect() as conn:
        if conn.execute(select(scrims.c.id).where(scrims.c.id == scrim_id)).first() is None:
            raise ScrimNotFound(scrim_id)
        player_count = conn.execute(
            select(func.count()).select_from(scrim_players).where(scrim_players.c.scrim_id == scrim_id)
        ).scalar_one()
        submissions = _load_submissions(conn, scrim_id)
    return resolve_consensus(submissions, int(player_count or 0))


def finalize_scrim(engine, scrim_id: str) -> bool:
    """Store the agreed score on a scrim still in scoring.

    Returns whether consensus is reached. A scrim that is already
    finalized keeps the score it was finalized with.
    """
    result = evaluate_consensus(engine, scrim_id)
    if not result.has_consensus:
        return False

    with engine.begin() as conn:
        updated = conn.execute(
            update(scrims)
            .where(scrims.c.id == scrim_id, scrims.c.status == "scoring")
            .values(
                status="finalized",
                team_a_score=result.team_a_score,
                team_b_score=result.team_b_score,
                winner=result.winner,
                finalized_at=datetime.now(timezone.utc),
            )
        ).rowcount
    if updated:
        print(f"✅ Scrim {scrim_id} finalized at {result.team_a_score}-{result.team_b_score} ({result.winner})")
    return True


def record_submission(
    engine,
    scrim_id: str,
    user_id: str,
    team_a_score,
    team_b_score,
    user_name: str | None = None,
    submitted_at: datetime | None = None,
) -> ConsensusResult:
    """Append one participant's score report and return the fresh verdict."""
    team_a_score = _validate_score(team_a_score, "team_a_score")
    team_b_score = _validate_score(team_b_score, "team_b_score")
    if not user_id:
        raise InvalidSubmission("user_id is required")
    submitted_at = submitted_at or datetime.now(timezone.utc)

    try:
        with engine.begin() as conn:
            scrim = conn.execute(select(scrims.c.status).where(scrims.c.id == scrim_id)).first()
            if scrim is None:
                raise ScrimNotFound(scrim_id)
            if scrim.status not in REPORTING_STATUSES:
                raise InvalidSubmission(f"Scrim {scrim_id} is not in scoring phase ({scrim.status})")

            player = conn.execute(
                select(scrim_players.c.user_name).where(
                    scrim_players.c.scrim_id == scrim_id,
                    scrim_players.c.user_id == user_id,
                )
            ).first()
            if player is None:
                raise NotAParticipant(f"{user_id} did not play in scrim {scrim_id}")

            existing = conn.execute(
                select(score_submissions.c.id).where(
                    score_submissions.c.scrim_id == scrim_id,
                    score_submissions.c.user_id == user_id,
                )
            ).first()
            if existing is not None:
                raise DuplicateSubmission(f"{user_id} already reported a score for scrim {scrim_id}")

            conn.execute(
                insert(score_submissions).values(
                    scrim_id=scrim_id,
                    user_id=user_id,
                    user_name=user_name or player.user_name,
                    team_a_score=team_a_score,
                    team_b_score=team_b_score,
                    submitted_at=submitted_at,
                )
            )
    except IntegrityError as e:
        # lost a race with a concurrent report from the same user
        raise DuplicateSubmission(f"{user_id} already reported a score for scrim {scrim_id}") from e

    finalize_scrim(engine, scrim_id)
    return evaluate_consensus(engine, scrim_id)
