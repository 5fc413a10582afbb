from prometheus_client import Counter, Histogram, Gauge

# Controller metrics
SESSIONS_COMMITTED = Counter(
    "luckydraw_sessions_committed_total",
    "Draw sessions committed",
    ["role"]  # primary, vip
)
SESSIONS_REVEALED = Counter("luckydraw_sessions_revealed_total", "Draw sessions revealed", ["role"])
SESSIONS_BLOCKED = Counter(
    "luckydraw_sessions_blocked_total",
    "Commit attempts refused because another controller owns the session",
    ["role"]
)
PHASE_TRANSITIONS = Counter(
    "luckydraw_phase_transitions_total",
    "Phase transitions published",
    ["role", "phase"]
)
ACTIVE_SESSION = Gauge("luckydraw_active_session", "1 while this controller owns a session", ["role"])

# Finalizer metrics
FINALIZE_OUTCOMES = Counter(
    "luckydraw_finalize_total",
    "Finalize calls by outcome",
    ["outcome"]  # success, already_processed, error
)
WINNERS_PERSISTED = Counter("luckydraw_winners_persisted_total", "Winner records written")
FINALIZE_DURATION = Histogram(
    "luckydraw_finalize_duration_seconds",
    "Time to finalize a draw session",
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5]
)

# Shared channel and lease metrics
CHANNEL_WRITES = Counter(
    "luckydraw_channel_writes_total",
    "Shared draw-state writes",
    ["outcome"]  # written, conflict, retried
)
LEASE_EVENTS = Counter(
    "luckydraw_lease_events_total",
    "Session lease operations",
    ["event"]  # acquired, denied, renewed, lost, released
)

# Pool cleanup metrics
POOL_CLEANUP_REMOVED = Counter("luckydraw_pool_cleanup_removed_total", "Participants removed after winning")
POOL_CLEANUP_FAILURES = Counter("luckydraw_pool_cleanup_failures_total", "Pool cleanup batches that failed")

# Redis stream metrics
STREAM_MESSAGES_PUBLISHED = Counter(
    "luckydraw_stream_messages_published_total",
    "Messages published to Redis streams",
    ["stream"]
)
STREAM_MESSAGES_CONSUMED = Counter(
    "luckydraw_stream_messages_consumed_total",
    "Messages consumed from Redis streams",
    ["stream", "consumer_group"]
)
