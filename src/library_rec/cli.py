import argparse
import atexit
import json
import logging

from tqdm import tqdm

from .config import EMBEDDING_MODEL, EMBEDDING_URL, IMPORT_CHUNK_SIZE
from .database import (
    add_custom_interest, add_disliked_items, close_pool, get_run, get_run_candidates,
    get_stats, init_db, list_runs, load_user_config_override, remove_custom_interest,
    save_admin_config, save_user_config_override, set_franchise_preference, set_genre_weight,
    upsert_embeddings, upsert_items, upsert_ratings, upsert_users, upsert_watch_history,
)
from .embeddings import EmbeddingRequestError, HttpTextEmbedder
from .franchise import DETECTION_MODES
from .jobs import SqliteJobTracker, new_job_id
from .pipeline import RecommendationPipeline, RunInProgressError, UserNotFoundError
from .pipeline_config import MEDIA_KINDS, PipelineConfig
from .stores import SqliteCatalogStore, SqliteEmbeddingProvider, SqlitePreferenceStore

logger = logging.getLogger(__name__)

# Register cleanup on exit
atexit.register(close_pool)


def _batched(items, size=IMPORT_CHUNK_SIZE):
    for i in range(0, len(items), size):
        yield items[i:i + size]


def _build_pipeline() -> RecommendationPipeline:
    text_embedder = HttpTextEmbedder() if EMBEDDING_URL else None
    return RecommendationPipeline.from_database(text_embedder=text_embedder)


def _config_overrides(args: argparse.Namespace) -> dict:
    """Algorithm settings given on the command line; unset flags are left out."""
    overrides = {}
    for name in ('selected_count', 'max_candidates', 'recent_watch_limit', 'similarity_weight',
                 'novelty_weight', 'rating_weight', 'diversity_weight'):
        value = getattr(args, name, None)
        if value is not None:
            overrides[name] = value
    return overrides


def _parse_config_value(raw: str):
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def cmd_init_db(args: argparse.Namespace) -> None:
    """Create the database schema."""
    init_db()
    logger.info("Database initialized")


def cmd_load(args: argparse.Namespace) -> None:
    """
    Load a JSON library export.

    Keys (all optional): model_id, users, items (each may carry an
    ``embedding``), watch_history, ratings, dislikes, interests.
    """
    with open(args.file, 'r') as f:
        data = json.load(f)

    model_id = args.model or data.get('model_id') or EMBEDDING_MODEL

    if data.get('users'):
        upsert_users(data['users'])
        logger.info(f"Loaded {len(data['users'])} users")

    items = data.get('items') or []
    kinds_with_embeddings = set()
    for chunk in tqdm(list(_batched(items)), desc="Items", disable=not items):
        upsert_items(chunk)
        embedded = [(item['id'], item['embedding']) for item in chunk if item.get('embedding')]
        if embedded:
            upsert_embeddings(embedded, model_id)
            kinds_with_embeddings.update(
                item.get('media_kind', 'movie') for item in chunk if item.get('embedding')
            )
    if items:
        logger.info(f"Loaded {len(items)} items")

    for chunk in _batched(data.get('watch_history') or []):
        upsert_watch_history(chunk)
    for chunk in _batched(data.get('ratings') or []):
        upsert_ratings(chunk)
    for row in data.get('dislikes') or []:
        add_disliked_items(row['user_id'], row['item_ids'])
    for row in data.get('interests') or []:
        add_custom_interest(row['user_id'], row['text'], row.get('weight', 1.0))

    provider = SqliteEmbeddingProvider()
    for kind in sorted(kinds_with_embeddings):
        if provider.get_active_model_id(kind) is None or args.activate:
            provider.set_active_model_id(kind, model_id)

    logger.info(f"Load completed from {args.file}")


def _log_recommendations(recs, username: str, media_kind: str, output_format: str) -> None:
    if output_format == 'json':
        output = [{
            "rank": sc.selected_rank,
            "item_id": sc.item_id,
            "title": sc.title,
            "year": sc.candidate.year,
            "genres": sc.genres,
            "score": round(sc.final_base, 4),
            "diversity": round(sc.diversity_score, 4) if sc.diversity_score is not None else None,
            "explanation": sc.extra.get('explanation'),
        } for sc in recs]
        logger.info(json.dumps(output, indent=2))
        return

    logger.info(f"\nTop {len(recs)} {media_kind} recommendations for {username}:")
    for sc in recs:
        year = f" ({sc.candidate.year})" if sc.candidate.year else ""
        logger.info(f"{sc.selected_rank}. {sc.title}{year} - Score: {sc.final_base:.3f}")
        if sc.extra.get('explanation'):
            logger.info(f"   Why: {sc.extra['explanation']}")


def cmd_recommend(args: argparse.Namespace) -> None:
    """Run the pipeline for one user."""
    pipeline = _build_pipeline()
    try:
        result = pipeline.generate_for_user(args.user, args.media_kind, _config_overrides(args))
    except (UserNotFoundError, RunInProgressError, ValueError) as e:
        logger.error(str(e))
        return

    if not result.recommendations:
        logger.info(f"No recommendations for {args.user} (run {result.run_id})")
        return
    _log_recommendations(result.recommendations, args.user, args.media_kind, args.format)
    logger.info(f"\nRun {result.run_id}: {len(result.recommendations)} of {result.candidate_count} candidates")


def cmd_recommend_all(args: argparse.Namespace) -> None:
    """Run the pipeline for every enabled user as a tracked job."""
    tracker = SqliteJobTracker()
    job_id = tracker.create(args.job_id or new_job_id('recommend'), f"recommend-all {args.media_kind}", 1)
    logger.info(f"Job {job_id} started (cancel with: library-rec cancel {job_id})")

    pipeline = _build_pipeline()
    result = pipeline.generate_for_all_users(job_id=job_id, media_kind=args.media_kind)

    logger.info(f"\nBatch {job_id} {'cancelled' if result.cancelled else 'finished'}:")
    logger.info(f"  Succeeded: {result.success}")
    logger.info(f"  Failed: {result.failed}")
    logger.info(f"  Recommendations: {result.total_recommendations}")
    for user_id, error in result.errors.items():
        logger.info(f"  {user_id}: {error}")


def cmd_regenerate(args: argparse.Namespace) -> None:
    """Clear a user's runs and taste profile, then generate again."""
    pipeline = _build_pipeline()
    try:
        run_id, count = pipeline.regenerate_for_user(args.user, args.media_kind)
    except (UserNotFoundError, RunInProgressError) as e:
        logger.error(str(e))
        return
    logger.info(f"Regenerated {count} {args.media_kind} recommendations for {args.user} (run {run_id})")


def cmd_clear(args: argparse.Namespace) -> None:
    pipeline = _build_pipeline()
    if args.user:
        try:
            count = pipeline.clear_for_user(args.user, args.media_kind)
        except RunInProgressError as e:
            logger.error(str(e))
            return
        logger.info(f"Cleared {count} runs for {args.user}")
    else:
        count = pipeline.clear_all()
        logger.info(f"Cleared {count} runs for all users")


def cmd_runs(args: argparse.Namespace) -> None:
    """List recommendation runs."""
    runs = list_runs(args.user, args.media_kind)
    if not runs:
        logger.info("No runs recorded")
        return
    for run in runs:
        error = f" - {run['error_message']}" if run['error_message'] else ""
        logger.info(
            f"  #{run['id']} {run['user_id']} {run['media_kind']} {run['status']}: "
            f"{run['selected_count'] or 0}/{run['candidate_count'] or 0} in {run['duration_ms'] or 0}ms{error}"
        )


def cmd_show_run(args: argparse.Namespace) -> None:
    """Show a stored run with its selected (or all stored) candidates."""
    run = get_run(args.run_id)
    if run is None:
        logger.error(f"Run {args.run_id} not found")
        return

    logger.info(f"\nRun {run['id']} for {run['user_id']} ({run['media_kind']}): {run['status']}")
    logger.info(f"  Started: {run['started_at']}  Finished: {run['finished_at']}")
    logger.info(f"  Candidates: {run['candidate_count']}  Selected: {run['selected_count']}")
    if run['error_message']:
        logger.info(f"  Error: {run['error_message']}")

    for c in get_run_candidates(args.run_id, selected_only=not args.all):
        marker = f"#{c['selected_rank']}" if c['is_selected'] else "  "
        diversity = f" div={c['diversity_score']:.2f}" if c['diversity_score'] is not None else ""
        logger.info(
            f"{marker:>4} rank {c['rank']:>3}  {c['title']} ({c['year']}) "
            f"score={c['final_score']:.3f} sim={c['similarity_score']:.2f} "
            f"nov={c['novelty_score']:.2f} rat={c['rating_score']:.2f}{diversity}"
        )
        if c['explanation']:
            logger.info(f"         {c['explanation']}")


def cmd_franchises(args: argparse.Namespace) -> None:
    """Show, detect or pin franchise preferences."""
    if args.set:
        name, score = args.set
        set_franchise_preference(args.user, name, args.media_kind, float(score))
        logger.info(f"Pinned {name} at {float(score):+.2f} for {args.user}")

    store = SqlitePreferenceStore()
    if args.detect:
        pipeline = _build_pipeline()
        result = pipeline.detector.detect_franchises(args.user, args.media_kind, args.mode)
        logger.info(f"Detection ({args.mode}): {result.updated} written, {len(result.new_items)} new")

    prefs = store.list_franchise_preferences(args.user, args.media_kind)
    if not prefs:
        logger.info(f"No franchise preferences for {args.user}")
        return
    logger.info(f"\nFranchise preferences for {args.user} ({args.media_kind}):")
    for p in prefs:
        pinned = " (set by user)" if p['is_user_set'] else ""
        logger.info(
            f"  {p['franchise_name']}: {p['preference_score']:+.2f} "
            f"[{p['items_watched'] or 0} watched, engagement {p['total_engagement'] or 0}]{pinned}"
        )


def cmd_genres(args: argparse.Namespace) -> None:
    """Show, detect or pin genre weights."""
    if args.set:
        genre, weight = args.set
        set_genre_weight(args.user, genre, float(weight))
        logger.info(f"Pinned {genre} at {float(weight):.2f} for {args.user}")

    if args.detect:
        detector = _build_pipeline().detector
        result = detector.detect_genres(args.user, args.media_kind, args.mode)
        logger.info(f"Detection ({args.mode}): {result.updated} written, {len(result.new_items)} new")

    weights = SqlitePreferenceStore().get_genre_weights(args.user)
    if not weights:
        logger.info(f"No genre weights for {args.user}")
        return
    logger.info(f"\nGenre weights for {args.user}:")
    for genre, weight in sorted(weights.items(), key=lambda kv: -kv[1]):
        logger.info(f"  {genre}: {weight:.2f}")


def cmd_interest_add(args: argparse.Namespace) -> None:
    """Add a free-text interest, embedding it now when an endpoint is configured."""
    embedding = None
    model_id = None
    if EMBEDDING_URL:
        embedder = HttpTextEmbedder()
        try:
            embedding = embedder.get_text_embedding(args.text)
            model_id = embedder.model_id
        except EmbeddingRequestError as e:
            logger.warning(f"Interest stored without embedding: {e}")
        finally:
            embedder.close()

    interest_id = add_custom_interest(args.user, args.text, args.weight, embedding, model_id)
    logger.info(f"Added interest {interest_id} for {args.user}: {args.text}")


def cmd_interest_remove(args: argparse.Namespace) -> None:
    if remove_custom_interest(args.user, args.interest_id):
        logger.info(f"Removed interest {args.interest_id}")
    else:
        logger.error(f"Interest {args.interest_id} not found for {args.user}")


def cmd_config_set(args: argparse.Namespace) -> None:
    """Set an algorithm default for a media kind, or a per-user override."""
    if args.key not in PipelineConfig.__dataclass_fields__ or args.key == 'media_kind':
        logger.error(f"Unknown setting: {args.key}")
        return

    value = _parse_config_value(args.value)
    if args.user:
        settings = load_user_config_override(args.user, args.media_kind)
        settings[args.key] = value
        save_user_config_override(args.user, args.media_kind, settings)
        logger.info(f"Set {args.key}={value!r} for {args.user} ({args.media_kind})")
    else:
        save_admin_config(args.media_kind, {args.key: value})
        logger.info(f"Set default {args.key}={value!r} ({args.media_kind})")


def cmd_set_model(args: argparse.Namespace) -> None:
    SqliteEmbeddingProvider().set_active_model_id(args.media_kind, args.model)


def cmd_cancel(args: argparse.Namespace) -> None:
    if SqliteJobTracker().request_cancel(args.job_id):
        logger.info(f"Cancellation requested for {args.job_id}")
    else:
        logger.error(f"No running job {args.job_id}")


def cmd_job_status(args: argparse.Namespace) -> None:
    job = SqliteJobTracker().get(args.job_id)
    if job is None:
        logger.error(f"Job {args.job_id} not found")
        return

    logger.info(f"\nJob {job['id']} ({job['name']}): {job['status']}")
    logger.info(f"  Step {job['current_step'] or 0}/{job['total_steps'] or 0}: {job['step_name'] or '-'}")
    logger.info(f"  Progress: {job['items_processed'] or 0}/{job['items_total'] or 0} {job['current_item'] or ''}")
    if job['result']:
        logger.info(f"  Result: {json.dumps(job['result'])}")
    if job['error_message']:
        logger.info(f"  Error: {job['error_message']}")
    for entry in job['logs'][-args.tail:]:
        logger.info(f"  [{entry['level']}] {entry['message']}")


def cmd_stats(args: argparse.Namespace) -> None:
    """Show database statistics."""
    stats = get_stats()
    logger.info("\nDatabase Statistics:")
    for table, count in stats.items():
        logger.info(f"  {table}: {count}")

    provider = SqliteEmbeddingProvider()
    for kind in MEDIA_KINDS:
        logger.info(f"  active {kind} model: {provider.get_active_model_id(kind) or '-'}")

    if getattr(args, 'verbose', False):
        catalog = SqliteCatalogStore()
        for kind in MEDIA_KINDS:
            logger.info(f"  enabled {kind} users: {len(catalog.list_enabled_users(kind))}")


def _add_media_kind(parser, default='movie'):
    parser.add_argument("--media-kind", "-k", choices=MEDIA_KINDS, default=default,
                        help="Movies or series")


def main():
    parser = argparse.ArgumentParser(description="Personal Media Library Recommender")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create the database schema")
    init_parser.set_defaults(func=cmd_init_db)

    load_parser = subparsers.add_parser("load", help="Load users, items, embeddings and history from JSON")
    load_parser.add_argument("file", help="JSON file")
    load_parser.add_argument("--model", help="Embedding model id of the item vectors")
    load_parser.add_argument("--activate", action="store_true",
                             help="Make the loaded model active even if one is already set")
    load_parser.set_defaults(func=cmd_load)

    rec_parser = subparsers.add_parser("recommend", help="Generate recommendations for a user")
    rec_parser.add_argument("user", help="User id")
    _add_media_kind(rec_parser)
    rec_parser.add_argument("--selected-count", "-n", type=int, help="Number of items to select")
    rec_parser.add_argument("--max-candidates", type=int, help="Candidates to retrieve")
    rec_parser.add_argument("--recent-watch-limit", type=int, help="Watched items in the taste profile")
    rec_parser.add_argument("--similarity-weight", type=float)
    rec_parser.add_argument("--novelty-weight", type=float)
    rec_parser.add_argument("--rating-weight", type=float)
    rec_parser.add_argument("--diversity-weight", type=float)
    rec_parser.add_argument("--format", choices=["text", "json"], default="text", help="Output format")
    rec_parser.set_defaults(func=cmd_recommend)

    all_parser = subparsers.add_parser("recommend-all", help="Generate recommendations for every enabled user")
    _add_media_kind(all_parser)
    all_parser.add_argument("--job-id", help="Job id to track the batch under")
    all_parser.set_defaults(func=cmd_recommend_all)

    regen_parser = subparsers.add_parser("regenerate", help="Clear and regenerate a user's recommendations")
    regen_parser.add_argument("user", help="User id")
    _add_media_kind(regen_parser)
    regen_parser.set_defaults(func=cmd_regenerate)

    clear_parser = subparsers.add_parser("clear", help="Delete stored runs (one user, or everyone)")
    clear_parser.add_argument("user", nargs="?", help="User id; omit to clear all users")
    clear_parser.add_argument("--media-kind", "-k", choices=MEDIA_KINDS, help="Only this media kind")
    clear_parser.set_defaults(func=cmd_clear)

    runs_parser = subparsers.add_parser("runs", help="List recommendation runs")
    runs_parser.add_argument("--user", help="Only this user")
    runs_parser.add_argument("--media-kind", "-k", choices=MEDIA_KINDS, help="Only this media kind")
    runs_parser.set_defaults(func=cmd_runs)

    show_parser = subparsers.add_parser("show-run", help="Show a stored run")
    show_parser.add_argument("run_id", type=int, help="Run id")
    show_parser.add_argument("--all", action="store_true", help="Include unselected candidates")
    show_parser.set_defaults(func=cmd_show_run)

    franchise_parser = subparsers.add_parser("franchises", help="Franchise preferences")
    franchise_parser.add_argument("user", help="User id")
    _add_media_kind(franchise_parser)
    franchise_parser.add_argument("--detect", action="store_true", help="Detect from watch history first")
    franchise_parser.add_argument("--mode", choices=DETECTION_MODES, default="reset")
    franchise_parser.add_argument("--set", nargs=2, metavar=("NAME", "SCORE"), help="Pin a preference (-1 to 1)")
    franchise_parser.set_defaults(func=cmd_franchises)

    genre_parser = subparsers.add_parser("genres", help="Genre weights")
    genre_parser.add_argument("user", help="User id")
    _add_media_kind(genre_parser)
    genre_parser.add_argument("--detect", action="store_true", help="Detect from watch history first")
    genre_parser.add_argument("--mode", choices=DETECTION_MODES, default="reset")
    genre_parser.add_argument("--set", nargs=2, metavar=("GENRE", "WEIGHT"), help="Pin a weight (0 to 2)")
    genre_parser.set_defaults(func=cmd_genres)

    interest_parser = subparsers.add_parser("interest-add", help="Add a free-text interest")
    interest_parser.add_argument("user", help="User id")
    interest_parser.add_argument("text", help="Interest, e.g. 'heist movies'")
    interest_parser.add_argument("--weight", type=float, default=1.0, help="Interest weight (0 to 2)")
    interest_parser.set_defaults(func=cmd_interest_add)

    interest_rm_parser = subparsers.add_parser("interest-remove", help="Remove a free-text interest")
    interest_rm_parser.add_argument("user", help="User id")
    interest_rm_parser.add_argument("interest_id", type=int, help="Interest id")
    interest_rm_parser.set_defaults(func=cmd_interest_remove)

    config_parser = subparsers.add_parser("config-set", help="Set an algorithm default or user override")
    config_parser.add_argument("key", help="Setting name, e.g. diversity_weight")
    config_parser.add_argument("value", help="Value (JSON)")
    _add_media_kind(config_parser)
    config_parser.add_argument("--user", help="Override for this user only")
    config_parser.set_defaults(func=cmd_config_set)

    model_parser = subparsers.add_parser("set-model", help="Set the active embedding model")
    model_parser.add_argument("model", help="Embedding model id")
    _add_media_kind(model_parser)
    model_parser.set_defaults(func=cmd_set_model)

    cancel_parser = subparsers.add_parser("cancel", help="Request cancellation of a running job")
    cancel_parser.add_argument("job_id", help="Job id")
    cancel_parser.set_defaults(func=cmd_cancel)

    job_parser = subparsers.add_parser("job-status", help="Show job progress and log")
    job_parser.add_argument("job_id", help="Job id")
    job_parser.add_argument("--tail", type=int, default=20, help="Log lines to show")
    job_parser.set_defaults(func=cmd_job_status)

    stats_parser = subparsers.add_parser("stats", help="Show database statistics")
    stats_parser.set_defaults(func=cmd_stats)

    args = parser.parse_args()

    # Configure logging based on verbosity
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    # Schema creation is idempotent; every command expects the tables
    init_db()
    args.func(args)
