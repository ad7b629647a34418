import importlib
import sys
from pathlib import Path

import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from emotion_rec.exploration import SeededRandom  # noqa: E402
from emotion_rec.experience import InMemoryExperienceLog  # noqa: E402
from emotion_rec.qtable import InMemoryQTable  # noqa: E402
from emotion_rec.retrieval import ContentProfile, InMemoryVectorRetriever  # noqa: E402
from emotion_rec.state import EmotionalState, DesiredState  # noqa: E402


@pytest.fixture
def fresh_config(monkeypatch, tmp_path):
    """
    Reload config with a temporary database path; restore the defaults afterwards.
    """
    monkeypatch.setenv("EMOTION_REC_DB", str(tmp_path / "test.db"))
    import emotion_rec.config as config

    importlib.reload(config)
    yield config
    monkeypatch.undo()
    importlib.reload(config)


@pytest.fixture
def rng():
    return SeededRandom(1234)


@pytest.fixture
def q_store():
    return InMemoryQTable()


@pytest.fixture
def experience_log():
    return InMemoryExperienceLog()


@pytest.fixture
def db(tmp_path):
    from emotion_rec.database import Database

    database = Database(tmp_path / "emotion.db").init()
    yield database
    database.close()


@pytest.fixture
def stressed_state():
    return EmotionalState(valence=-0.6, arousal=0.2, stress=0.7)


@pytest.fixture
def calm_target():
    return DesiredState(target_valence=0.5, target_arousal=-0.2, target_stress=0.3)


@pytest.fixture
def catalog():
    return [
        ContentProfile("calm-doc", "Quiet Forest", valence_delta=0.4, arousal_delta=-0.3,
                       stress_reduction=0.4, genres=["nature"], category="documentary",
                       duration=50, total_watches=40, outcome_variance=0.2),
        ContentProfile("comedy", "Loud Laughs", valence_delta=0.6, arousal_delta=0.4,
                       stress_reduction=0.1, genres=["comedy"], category="movie",
                       duration=95, total_watches=120, outcome_variance=0.3),
        ContentProfile("thriller", "Edge of Night", valence_delta=-0.2, arousal_delta=0.7,
                       stress_reduction=-0.3, genres=["thriller"], category="movie",
                       duration=110, total_watches=5, outcome_variance=0.5),
        ContentProfile("meditation", "Breathe", valence_delta=0.3, arousal_delta=-0.6,
                       stress_reduction=0.6, genres=["mindfulness"], category="meditation",
                       duration=15, total_watches=0, outcome_variance=0.1),
        ContentProfile("drama", "Heavy Rain", valence_delta=-0.5, arousal_delta=0.1,
                       stress_reduction=0.0, genres=["drama"], category="movie",
                       duration=130, total_watches=60, outcome_variance=0.4),
    ]


@pytest.fixture
def retriever(catalog):
    return InMemoryVectorRetriever.from_profiles(catalog)
