"""Adaptive scraping orchestration and resilience engine.

Runs budget-bounded scraping sessions against a rate-limited metrics API
and protects accounts and budget from cascading failures.

Key modules:
    config          -- ScrapingConfig, presets, validation, env overrides
    rate_limiter    -- RateLimiter shared by every session
    cost_optimizer  -- CostOptimizer for budget analysis and the spend ledger
    backoff         -- BackoffStrategy for exponential retry delays
    errors          -- raw failure types and classify_error
    strategies      -- RecoveryRule classes and RecoverySelector
    patterns        -- ErrorPatternAnalyzer and its background worker
    health          -- AccountHealthMonitor with a TTL cache
    risk            -- SessionRiskAssessment and RiskPolicy
    recovery        -- ErrorRecoveryManager tying the above together
    session         -- pure session state machine
    controller      -- SessionPool running one worker per session
    manager         -- SessionManager for creation, control and queries
    client          -- MetricsApiClient implementations
    storage         -- session stores and event logs
    metrics         -- MetricsCollector for per-account outcomes
    models          -- enums and dataclasses
"""
