import logging
import os

logger = logging.getLogger(__name__)


def _canon_prefix(val):
    """
    Normalize API prefix to always be exactly like '/api':
      - defaults to '/api' when unset/empty
      - ensures a single leading slash
      - removes any trailing slash (except for root)
    """
    val = (val or "/api").strip()
    if not val.startswith("/"):
        val = "/" + val
    if len(val) > 1 and val.endswith("/"):
        val = val[:-1]
    return val


def _parse_float(env_var: str, default: float, *, minimum: float = 0.0) -> float:
    raw_value = os.getenv(env_var)
    if raw_value is None or not raw_value.strip():
        return default

    try:
        value = float(raw_value)
    except ValueError:
        logger.warning(
            "%s is not a valid float (got %r); defaulting to %s",
            env_var,
            raw_value,
            default,
        )
        return default

    if value < minimum:
        logger.warning("%s must be >= %s; defaulting to %s", env_var, minimum, default)
        return default

    return value


def _parse_int(env_var: str, default: int | None, *, minimum: int = 1) -> int | None:
    raw_value = os.getenv(env_var)
    if raw_value is None or not raw_value.strip():
        return default

    try:
        value = int(raw_value)
    except ValueError:
        logger.warning(
            "%s is not a valid integer (got %r); defaulting to %s",
            env_var,
            raw_value,
            default,
        )
        return default

    if value < minimum:
        logger.warning("%s must be >= %s; defaulting to %s", env_var, minimum, default)
        return default

    return value


API_PREFIX = _canon_prefix(os.getenv("API_PREFIX"))

# Elo tuning; a K of zero would freeze every rating.
ELO_K_FACTOR = _parse_float("ELO_K_FACTOR", 32.0, minimum=1.0)

RANKING_MAX_COMPARISONS = _parse_int("RANKING_MAX_COMPARISONS", 5)
RANKING_RETRY_ATTEMPTS = _parse_int("RANKING_RETRY_ATTEMPTS", 3)
RANKING_RETRY_WAIT_SECONDS = _parse_float("RANKING_RETRY_WAIT_SECONDS", 0.2)
RANKING_QUEUE_SEED = _parse_int("RANKING_QUEUE_SEED", None, minimum=0)

RANKINGS_CACHE_TTL_SECONDS = _parse_float("RANKINGS_CACHE_TTL_SECONDS", 60.0)
# Idle sessions older than this no longer block a new open().
RANKING_SESSION_TTL_SECONDS = _parse_float("RANKING_SESSION_TTL_SECONDS", 1800.0)
# Upper bound on one attempt of queue loading or vote submission.
RANKING_STEP_TIMEOUT_SECONDS = _parse_float("RANKING_STEP_TIMEOUT_SECONDS", 5.0, minimum=0.1)
