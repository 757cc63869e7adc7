"""
DevRunner Database Schema Definitions

Raw SQL schema for SQLite.
"""

SCHEMA_SQLITE = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    status TEXT NOT NULL DEFAULT 'DRAFT',
    business_plan TEXT,
    technical_plan TEXT,
    ux_plan TEXT,
    github_repo_owner TEXT,
    github_repo_name TEXT,
    netlify_site_id TEXT,
    production_url TEXT,
    last_deploy_at TEXT,
    secrets TEXT,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS development_runs (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id),
    status TEXT NOT NULL,
    current_iteration INTEGER NOT NULL DEFAULT 0,
    total_iterations INTEGER NOT NULL DEFAULT 0,
    plans_snapshot TEXT,
    worker_sandbox_path TEXT,
    error_summary TEXT,
    started_at TEXT,
    finished_at TEXT,
    canceled_at TEXT,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS iteration_runs (
    id TEXT PRIMARY KEY,
    run_id TEXT NOT NULL REFERENCES development_runs(id),
    iteration_index INTEGER NOT NULL,
    name TEXT NOT NULL,
    status TEXT NOT NULL,
    scope TEXT,
    gherkin_path TEXT,
    branch_name TEXT,
    attempt_count INTEGER NOT NULL DEFAULT 0,
    started_at TEXT,
    finished_at TEXT,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(run_id, iteration_index)
);

CREATE TABLE IF NOT EXISTS quality_gate_runs (
    id TEXT PRIMARY KEY,
    iteration_id TEXT NOT NULL REFERENCES iteration_runs(id),
    gate_type TEXT NOT NULL,
    passed INTEGER NOT NULL DEFAULT 0,
    duration_ms INTEGER NOT NULL DEFAULT 0,
    logs_ref TEXT,
    report TEXT,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(iteration_id, gate_type)
);

CREATE TABLE IF NOT EXISTS agent_task_runs (
    id TEXT PRIMARY KEY,
    run_id TEXT NOT NULL REFERENCES development_runs(id),
    iteration_id TEXT REFERENCES iteration_runs(id),
    agent_name TEXT NOT NULL,
    input_hash TEXT NOT NULL,
    status TEXT NOT NULL,
    output TEXT,
    token_usage INTEGER,
    cost REAL,
    duration_ms INTEGER,
    error_message TEXT,
    started_at TEXT,
    finished_at TEXT,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS run_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES development_runs(id),
    iteration_id TEXT,
    sequence INTEGER NOT NULL,
    event_type TEXT NOT NULL,
    message TEXT,
    payload TEXT,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(run_id, sequence)
);

CREATE INDEX IF NOT EXISTS idx_development_runs_project ON development_runs(project_id, created_at);
CREATE INDEX IF NOT EXISTS idx_iteration_runs_run ON iteration_runs(run_id, iteration_index);
CREATE INDEX IF NOT EXISTS idx_agent_task_runs_run ON agent_task_runs(run_id, iteration_id);
CREATE INDEX IF NOT EXISTS idx_run_events_run_sequence ON run_events(run_id, sequence);
"""
