import argparse
import json
import logging
import math
from pathlib import Path

import numpy as np
from tqdm import tqdm

from .config import DB_PATH, RETRIEVER_URL
from .database import Database, SQLiteQTable, SQLiteExperienceLog
from .errors import EmotionRecError, ValidationFault
from .experience import InMemoryExperienceLog
from .exploration import SeededRandom
from .qtable import InMemoryQTable
from .recommender import EmotionRecommender
from .retrieval import (
    ContentProfile,
    HttpVectorRetriever,
    InMemoryVectorRetriever,
    load_catalog,
    synthetic_catalog,
)
from .rl_config import EngineConfig
from .reward import RewardStrategy
from .state import EmotionalState, DesiredState, predict_desired_state
from .utils import clamp

logger = logging.getLogger(__name__)


def _validate_user_id(user_id: str) -> str:
    cleaned = user_id.strip()
    if not cleaned or len(cleaned) > 200:
        raise ValidationFault(f"Invalid user id: '{user_id[:50]}'")
    return cleaned


def _parse_state(values: list[float], label: str) -> EmotionalState:
    """Build an EmotionalState from [valence, arousal, stress], rejecting out-of-range input."""
    valence, arousal, stress = values
    for name, value, lo, hi in (
        ("valence", valence, -1.0, 1.0),
        ("arousal", arousal, -1.0, 1.0),
        ("stress", stress, 0.0, 1.0),
    ):
        if not math.isfinite(value) or not (lo <= value <= hi):
            raise ValidationFault(f"{label} {name}={value} is outside [{lo}, {hi}]")
    return EmotionalState(valence=valence, arousal=arousal, stress=stress)


def _parse_desired(values: list[float] | None, current: EmotionalState) -> DesiredState:
    if values is None:
        return predict_desired_state(current)
    target = _parse_state(values, "target")
    return DesiredState.toward(current, target.valence, target.arousal, target.stress, reasoning="Requested target.")


def _load_config(args: argparse.Namespace) -> EngineConfig:
    if getattr(args, "config", None):
        try:
            config = EngineConfig.from_file(args.config)
        except (OSError, ValueError) as e:
            raise ValidationFault(f"Could not load config {args.config}: {e}") from e
    else:
        config = EngineConfig()
    strategy = getattr(args, "reward_strategy", None)
    if strategy:
        config.reward_strategy = RewardStrategy(strategy)
    return config


def _load_profiles(args: argparse.Namespace) -> list[ContentProfile]:
    if getattr(args, "catalog", None):
        try:
            return load_catalog(args.catalog)
        except (OSError, ValueError, KeyError) as e:
            raise ValidationFault(f"Could not load catalog {args.catalog}: {e}") from e
    return synthetic_catalog(args.catalog_size, seed=args.seed)


def _build_retriever(args: argparse.Namespace):
    url = getattr(args, "retriever_url", None) or RETRIEVER_URL
    if url:
        logger.debug(f"Using remote retriever at {url}")
        return HttpVectorRetriever(url)
    return InMemoryVectorRetriever.from_profiles(_load_profiles(args))


def _open_engine(args: argparse.Namespace, retriever=None) -> tuple[EmotionRecommender, Database]:
    config = _load_config(args)
    db = Database(args.db).init()
    engine = EmotionRecommender(
        retriever if retriever is not None else InMemoryVectorRetriever(),
        q_store=SQLiteQTable(db),
        experience_log=SQLiteExperienceLog(db, config.max_experiences_per_user),
        config=config,
    )
    return engine, db


def cmd_recommend(args: argparse.Namespace) -> None:
    """Rank content for a user's current emotional state."""
    user_id = _validate_user_id(args.user_id)
    current = _parse_state(args.state, "current")
    desired = _parse_desired(args.target, current)

    retriever = _build_retriever(args)
    engine, db = _open_engine(args, retriever)
    try:
        recs = engine.rank(user_id, current, desired, candidate_limit=args.limit)
    finally:
        db.close()
        if isinstance(retriever, HttpVectorRetriever):
            retriever.close()

    if not recs:
        logger.warning("No recommendations (retriever returned no candidates)")
        return

    if args.json:
        logger.info(json.dumps([r.to_dict() for r in recs], indent=2))
        return

    logger.info(f"\nRecommendations for {user_id} ({desired.reasoning or 'custom target'}):")
    for r in recs:
        flag = " [explore]" if r.is_exploration else ""
        title = r.title or r.content_id
        logger.info(
            f"  {r.rank:>2}. {title:<40} score={r.combined_score:.3f} "
            f"q={r.q_value:.3f} sim={r.similarity_score:.3f}{flag}"
        )
        if args.explain:
            logger.info(f"      {r.reasoning}")


def cmd_feedback(args: argparse.Namespace) -> None:
    """Record the outcome of watching a piece of content."""
    user_id = _validate_user_id(args.user_id)
    before = _parse_state(args.before, "before")
    after = _parse_state(args.after, "after")
    desired = _parse_desired(args.target, before)
    if args.rating is not None and not (1.0 <= args.rating <= 5.0):
        raise ValidationFault(f"rating={args.rating} is outside [1, 5]")
    if args.watched < 0 or args.total < 0:
        raise ValidationFault("durations must be non-negative")

    engine, db = _open_engine(args)
    try:
        result = engine.apply_feedback(
            user_id,
            args.content_id,
            before,
            after,
            desired,
            completed=args.completed,
            rating=args.rating,
            watch_duration=args.watched,
            total_duration=args.total,
            was_exploration=args.exploration,
        )
    finally:
        db.close()

    logger.info(f"\nReward: {result.reward.reward:+.3f}  ({result.reward.explanation})")
    for name, value in result.reward.components.items():
        logger.info(f"  {name}: {value:+.3f}")
    logger.info(
        f"Q[{result.update.state_key}][{result.update.content_id}]: "
        f"{result.update.old_q:.4f} -> {result.update.new_q:.4f} (td={result.update.td_error:+.4f}, "
        f"visits={result.update.visit_count})"
    )
    logger.info(f"Exploration rate: {result.exploration_rate:.3f}")


def _log_progress(progress) -> None:
    conv = progress.convergence
    logger.info(f"\nLearning progress for {progress.user_id}:")
    logger.info(f"  Experiences: {progress.total_experiences} ({progress.completed_content} completed)")
    logger.info(f"  Average reward: {progress.average_reward:+.3f} (trend: {progress.reward_trend})")
    logger.info(f"  Exploration rate: {progress.exploration_rate:.3f} "
                f"({progress.exploration_count} explore / {progress.exploitation_count} exploit)")
    logger.info(f"  Convergence: {conv.score:.1f}/100 [{conv.stage}]")
    logger.info(f"  {conv.explanation}")
    if progress.best_content:
        logger.info("  Best content:")
        for p in progress.best_content:
            logger.info(f"    {p.content_id}: reward={p.average_reward:+.3f} "
                        f"watched={p.times_watched} completion={p.completion_rate:.0%}")
    if progress.worst_content:
        logger.info("  Worst content:")
        for p in progress.worst_content:
            logger.info(f"    {p.content_id}: reward={p.average_reward:+.3f} "
                        f"watched={p.times_watched} completion={p.completion_rate:.0%}")


def _progress_to_dict(progress) -> dict:
    return {
        "user_id": progress.user_id,
        "total_experiences": progress.total_experiences,
        "completed_content": progress.completed_content,
        "average_reward": progress.average_reward,
        "reward_trend": progress.reward_trend,
        "recent_rewards": progress.recent_rewards,
        "exploration_rate": progress.exploration_rate,
        "exploration_count": progress.exploration_count,
        "exploitation_count": progress.exploitation_count,
        "convergence": {
            "score": progress.convergence.score,
            "stage": progress.convergence.stage,
            "explanation": progress.convergence.explanation,
            "metrics": progress.convergence.metrics,
        },
        "best_content": [p.content_id for p in progress.best_content],
        "worst_content": [p.content_id for p in progress.worst_content],
    }


def cmd_progress(args: argparse.Namespace) -> None:
    """Show learning progress for a user."""
    user_id = _validate_user_id(args.user_id)
    engine, db = _open_engine(args)
    try:
        progress = engine.get_progress(user_id)
    finally:
        db.close()

    if args.json:
        logger.info(json.dumps(_progress_to_dict(progress), indent=2))
    else:
        _log_progress(progress)


def cmd_qtable_stats(args: argparse.Namespace) -> None:
    """Summarize the stored Q-table."""
    db = Database(args.db).init()
    try:
        store = SQLiteQTable(db)
        stats = store.stats()
        top = []
        if args.user:
            entries = sorted(store.entries(args.user), key=lambda e: -e.q_value)
            top = entries[:args.top]
    finally:
        db.close()

    logger.info("\nQ-table statistics:")
    logger.info(f"  Entries: {stats['entries']}")
    logger.info(f"  Users: {stats['users']}")
    logger.info(f"  States visited: {stats['states']}")
    logger.info(f"  Total visits: {stats['total_visits']}")
    logger.info(f"  Q range: {stats['min_q']:.3f} .. {stats['max_q']:.3f} (mean {stats['mean_q']:.3f})")
    if top:
        logger.info(f"\nTop entries for {args.user}:")
        for e in top:
            logger.info(f"  {e.state_key} {e.content_id}: q={e.q_value:.4f} visits={e.visit_count}")


def _simulated_response(
    profile: ContentProfile,
    before: EmotionalState,
    rng: np.random.Generator,
) -> tuple[EmotionalState, bool, float]:
    """Synthetic viewer: the content's typical effect plus noise scaled by its outcome variance."""
    noise = rng.normal(0.0, 0.1 + 0.3 * profile.outcome_variance, size=3)
    after = EmotionalState(
        valence=clamp(before.valence + profile.valence_delta + noise[0], -1.0, 1.0),
        arousal=clamp(before.arousal + profile.arousal_delta + noise[1], -1.0, 1.0),
        stress=clamp(before.stress - profile.stress_reduction + noise[2], 0.0, 1.0),
    )
    mood_gain = after.valence - before.valence
    completed = bool(rng.random() < clamp(0.6 + mood_gain, 0.1, 0.95))
    rating = float(clamp(round(3 + 4 * mood_gain + rng.normal(0, 0.5)), 1, 5))
    return after, completed, rating


def cmd_simulate(args: argparse.Namespace) -> None:
    """Run a seeded learning loop against a synthetic viewer."""
    user_id = _validate_user_id(args.user_id)
    profiles = _load_profiles(args)
    retriever = InMemoryVectorRetriever.from_profiles(profiles)
    config = _load_config(args)

    db = None
    if args.persist:
        db = Database(args.db).init()
        q_store = SQLiteQTable(db)
        log = SQLiteExperienceLog(db, config.max_experiences_per_user)
    else:
        q_store = InMemoryQTable()
        log = InMemoryExperienceLog(config.max_experiences_per_user)

    engine = EmotionRecommender(retriever, q_store, log, config, rng=SeededRandom(args.seed))
    world = np.random.default_rng(args.seed + 1)

    try:
        for _ in tqdm(range(args.steps), desc="Simulating", unit="step"):
            before = EmotionalState(
                valence=float(world.uniform(-1, 1)),
                arousal=float(world.uniform(-1, 1)),
                stress=float(world.uniform(0, 1)),
            )
            desired = predict_desired_state(before)
            recs = engine.rank(user_id, before, desired, candidate_limit=args.limit, timeout=None)
            if not recs:
                logger.warning("Catalog produced no candidates; stopping")
                break
            pick = recs[0]
            profile = retriever.get(pick.content_id)
            after, completed, rating = _simulated_response(profile, before, world)
            total = profile.duration or 60.0
            watched = total if completed else total * float(world.uniform(0.05, 0.9))
            engine.apply_feedback(
                user_id,
                pick.content_id,
                before,
                after,
                desired,
                completed=completed,
                rating=rating,
                watch_duration=watched,
                total_duration=total,
                was_exploration=pick.is_exploration,
            )
        progress = engine.get_progress(user_id)
    finally:
        if db is not None:
            db.close()

    if args.json:
        logger.info(json.dumps(_progress_to_dict(progress), indent=2))
    else:
        _log_progress(progress)


def _add_catalog_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--catalog", type=Path, help="JSON file with content profiles")
    p.add_argument("--catalog-size", type=int, default=60, help="Size of the synthetic catalog when no file is given")
    p.add_argument("--seed", type=int, default=7, help="Seed for the synthetic catalog and exploration")


def main():
    parser = argparse.ArgumentParser(description="Emotion-aware content recommender")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument("--db", type=Path, default=DB_PATH, help="SQLite database path")
    parser.add_argument("--config", type=Path, help="JSON file with engine config overrides")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Recommend command
    rec_parser = subparsers.add_parser("recommend", help="Recommend content for a mood")
    rec_parser.add_argument("user_id", help="User identifier")
    rec_parser.add_argument("--state", type=float, nargs=3, required=True, metavar=("V", "A", "S"),
                            help="Current valence, arousal, stress")
    rec_parser.add_argument("--target", type=float, nargs=3, metavar=("V", "A", "S"),
                            help="Desired valence, arousal, stress (inferred when omitted)")
    rec_parser.add_argument("--limit", type=int, default=10, help="Number of recommendations")
    rec_parser.add_argument("--retriever-url", help="Remote similarity service")
    rec_parser.add_argument("--explain", action="store_true", help="Show reasoning per item")
    rec_parser.add_argument("--json", action="store_true", help="Output JSON")
    _add_catalog_args(rec_parser)
    rec_parser.set_defaults(func=cmd_recommend)

    # Feedback command
    fb_parser = subparsers.add_parser("feedback", help="Record a viewing outcome")
    fb_parser.add_argument("user_id", help="User identifier")
    fb_parser.add_argument("content_id", help="Content that was watched")
    fb_parser.add_argument("--before", type=float, nargs=3, required=True, metavar=("V", "A", "S"))
    fb_parser.add_argument("--after", type=float, nargs=3, required=True, metavar=("V", "A", "S"))
    fb_parser.add_argument("--target", type=float, nargs=3, metavar=("V", "A", "S"))
    fb_parser.add_argument("--completed", action="store_true", help="Content was watched to the end")
    fb_parser.add_argument("--rating", type=float, help="Star rating 1-5")
    fb_parser.add_argument("--watched", type=float, default=0.0, help="Minutes watched")
    fb_parser.add_argument("--total", type=float, default=0.0, help="Content length in minutes")
    fb_parser.add_argument("--exploration", action="store_true", help="The item was an exploratory pick")
    fb_parser.add_argument("--reward-strategy", choices=[s.value for s in RewardStrategy])
    fb_parser.set_defaults(func=cmd_feedback)

    # Progress command
    progress_parser = subparsers.add_parser("progress", help="Show learning progress")
    progress_parser.add_argument("user_id", help="User identifier")
    progress_parser.add_argument("--json", action="store_true", help="Output JSON")
    progress_parser.set_defaults(func=cmd_progress)

    # Q-table stats
    stats_parser = subparsers.add_parser("qtable-stats", help="Show Q-table statistics")
    stats_parser.add_argument("--user", help="Also list this user's top entries")
    stats_parser.add_argument("--top", type=int, default=10, help="Entries to list with --user")
    stats_parser.set_defaults(func=cmd_qtable_stats)

    # Simulation
    sim_parser = subparsers.add_parser("simulate", help="Run a synthetic learning loop")
    sim_parser.add_argument("user_id", nargs="?", default="sim-user", help="Simulated user id")
    sim_parser.add_argument("--steps", type=int, default=200, help="Feedback cycles to simulate")
    sim_parser.add_argument("--limit", type=int, default=5, help="Recommendations per cycle")
    sim_parser.add_argument("--persist", action="store_true", help="Write to the database instead of memory")
    sim_parser.add_argument("--reward-strategy", choices=[s.value for s in RewardStrategy])
    sim_parser.add_argument("--json", action="store_true", help="Output JSON")
    _add_catalog_args(sim_parser)
    sim_parser.set_defaults(func=cmd_simulate)

    args = parser.parse_args()

    # Configure logging based on verbosity
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        args.func(args)
    except EmotionRecError as e:
        logger.error(str(e))
        raise SystemExit(1) from e


if __name__ == "__main__":
    main()
