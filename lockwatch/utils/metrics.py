from prometheus_client import Counter, Histogram, Gauge
locks_granted = Counter('lockwatch_locks_granted_total', 'Locks granted')
locks_waiting = Gauge('lockwatch_locks_waiting', 'Pending lock requests')
evaluations = Counter('lockwatch_evaluations_total', 'Deadlock evaluations published')
evaluations_discarded = Counter('lockwatch_evaluations_discarded_total', 'Evaluations superseded by a newer snapshot')
deadlock_cycles = Gauge('lockwatch_deadlock_cycles', 'Circular waits in the latest evaluation')
malformed_locks = Counter('lockwatch_malformed_locks_total', 'Lock records skipped during graph build')
advice_rate_limited = Counter('lockwatch_advice_rate_limited_total', 'Advice requests rejected by upstream rate limit')
evaluation_latency = Histogram('lockwatch_evaluation_seconds', 'Snapshot-to-report latency')
