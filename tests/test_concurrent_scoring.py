"""
Concurrent score submissions against a file-backed SQLite database.

Every worker gets its own connection and Session, the way separate requests
do in the thread pool.
"""

import threading

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from models import User, TastingSession, Whiskey, Participant, Score, SessionStatus, WhiskeyTheme
from schemas import ScoreSubmit
from core.score_manager import ScoreManager
from core.security import Identity
from core.exceptions import ScoreAlreadySubmitted
from tests.conftest import RecordingBroadcaster

WORKERS = 8


@pytest.fixture
def file_db(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'tasting.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def seated(file_db):
    """Active session with one whiskey and one guest seat"""
    db = file_db()
    try:
        moderator = User(email="host@example.com", display_name="Host")
        db.add(moderator)
        db.flush()

        session = TastingSession(
            name="Race Night",
            theme=WhiskeyTheme.BOURBON,
            moderator_id=moderator.id,
            invite_code="RACE42",
            status=SessionStatus.ACTIVE,
        )
        db.add(session)
        db.flush()

        whiskey = Whiskey(session_id=session.id, display_number=1, name="W1", distillery="D1", proof=100.0)
        guest = Participant(session_id=session.id, display_name="Alice")
        db.add_all([whiskey, guest])
        db.commit()

        return {
            "session_id": session.id,
            "whiskey_id": whiskey.id,
            "participant_id": guest.id,
        }
    finally:
        db.close()


def race(file_db, seated, broadcaster):
    """Fire WORKERS submissions for the same pair at once"""
    start = threading.Barrier(WORKERS)
    outcomes = []
    identity = Identity(participant_id=seated["participant_id"], session_id=seated["session_id"])

    def worker(nose):
        db = file_db()
        data = ScoreSubmit(
            session_id=seated["session_id"],
            whiskey_id=seated["whiskey_id"],
            nose=nose, palate=5, finish=5, overall=5,
        )
        try:
            start.wait()
            ScoreManager.submit(db, broadcaster, identity, data)
            outcomes.append("locked")
        except ScoreAlreadySubmitted as e:
            outcomes.append(str(e))
        finally:
            db.close()

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(1, WORKERS + 1)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return outcomes


def stored_scores(file_db):
    db = file_db()
    try:
        return db.query(Score).count()
    finally:
        db.close()


def test_one_submission_wins(file_db, seated):
    broadcaster = RecordingBroadcaster()
    outcomes = race(file_db, seated, broadcaster)

    assert outcomes.count("locked") == 1
    assert outcomes.count("Score already submitted for this whiskey") == WORKERS - 1
    assert stored_scores(file_db) == 1
    assert broadcaster.events().count("score:locked") == 1


def test_constraint_decides_when_precheck_misses(file_db, seated, monkeypatch):
    monkeypatch.setattr(ScoreManager, "find_existing", staticmethod(lambda db, pid, wid: None))
    broadcaster = RecordingBroadcaster()
    outcomes = race(file_db, seated, broadcaster)

    assert outcomes.count("locked") == 1
    assert outcomes.count("Score already submitted for this whiskey") == WORKERS - 1
    assert stored_scores(file_db) == 1
