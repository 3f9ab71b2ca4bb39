"""
Policy service package.

Answers "may this subject perform this action on this resource?" with a
PERMIT or DENY decision and a machine-readable reason. It provides:

- app.main: HTTP surface for evaluation, effective permissions and cache admin.
- app.evaluation: Evaluator facade, timeout guard and batch fan-out.
- app.rules: Decision models and the ordered rule pipeline.
- app.catalog: Role hierarchy, permission catalog and the snapshot loader.
- app.identity: Token and gateway header normalization into subjects.
- app.cache: Redis-backed decision cache with a local fallback.

Guidelines:
- Expected authorization failures are decisions, never exceptions.
- Decisions are deterministic for a given catalog snapshot; the cache relies on it.
"""
