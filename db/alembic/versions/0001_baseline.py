"""Baseline schema for the build orchestrator.

Revision ID: 0001_baseline
Revises: None
Create Date: 2026-10-19

Idempotent (IF NOT EXISTS everywhere) so it can be applied to a database
that already carries the project/layer tables managed by the admin tool.
"""
from typing import Sequence, Union

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001_baseline"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto"')

    # -- reference data (owned by the admin tool) -----------------------------
    op.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            username        VARCHAR(255) NOT NULL UNIQUE,
            swdp_username   VARCHAR(255),
            email           VARCHAR(255),
            created_at      TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS projects (
            id                  UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            project_name        VARCHAR(255) NOT NULL,
            plan_id             VARCHAR(255),
            scm_config          JSONB NOT NULL DEFAULT '{}'::jsonb,
            build_config        JSONB NOT NULL DEFAULT '{}'::jsonb,
            analysis_config     JSONB NOT NULL DEFAULT '{}'::jsonb,
            is_certified        BOOLEAN NOT NULL DEFAULT false,
            log_path_template   TEXT,
            created_at          TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at          TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS layers (
            id                  UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            project_id          UUID NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
            name                VARCHAR(255) NOT NULL,
            type                VARCHAR(20) NOT NULL DEFAULT 'layer'
                                CHECK (type IN ('release', 'layer', 'private')),
            layer_path          TEXT,
            build_enabled       BOOLEAN NOT NULL DEFAULT true,
            sam_enabled         BOOLEAN NOT NULL DEFAULT true,
            coverity_enabled    BOOLEAN NOT NULL DEFAULT true,
            created_at          TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at          TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_layers_project_id ON layers(project_id)"
    )

    # -- queue ----------------------------------------------------------------
    op.execute("""
        CREATE TABLE IF NOT EXISTS build_queue (
            id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            project_id      UUID NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
            layer_id        UUID NOT NULL REFERENCES layers(id) ON DELETE CASCADE,
            requester_id    UUID REFERENCES users(id) ON DELETE SET NULL,
            req_method      VARCHAR(50) NOT NULL DEFAULT 'manual',
            status          VARCHAR(20) NOT NULL DEFAULT 'waiting'
                            CHECK (status IN ('waiting', 'processing', 'completed', 'failed', 'cancelled')),
            priority        INTEGER NOT NULL DEFAULT 0,
            scm_override    JSONB,
            build_override  JSONB,
            retry_count     INTEGER NOT NULL DEFAULT 0,
            max_retries     INTEGER NOT NULL DEFAULT 3,
            last_error      TEXT,
            build_id        UUID,
            queued_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
            processed_at    TIMESTAMPTZ,
            completed_at    TIMESTAMPTZ
        )
    """)
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_build_queue_dispatch "
        "ON build_queue(status, priority DESC, queued_at ASC)"
    )

    # -- builds ---------------------------------------------------------------
    op.execute("""
        CREATE TABLE IF NOT EXISTS builds (
            id                  UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            project_id          UUID NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
            layer_id            UUID NOT NULL REFERENCES layers(id) ON DELETE CASCADE,
            queue_id            UUID REFERENCES build_queue(id) ON DELETE SET NULL,
            build_request_id    UUID,
            round               INTEGER NOT NULL,
            build_number        INTEGER NOT NULL,
            status              VARCHAR(20) NOT NULL DEFAULT 'pending'
                                CHECK (status IN ('pending', 'running', 'success', 'failed', 'cancelled')),
            trigger_type        VARCHAR(50),
            triggered_by        UUID REFERENCES users(id) ON DELETE SET NULL,
            external_key        VARCHAR(255),
            external_number     INTEGER,
            snapshot            JSONB NOT NULL DEFAULT '{}'::jsonb,
            artifacts           JSONB,
            quality_metrics     JSONB,
            release_criteria    JSONB,
            release_status      VARCHAR(20) NOT NULL DEFAULT 'none'
                                CHECK (release_status IN ('none', 'available', 'pending_approval',
                                                          'approved', 'rejected', 'released')),
            started_at          TIMESTAMPTZ,
            finished_at         TIMESTAMPTZ,
            duration_seconds    INTEGER,
            created_at          TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_builds_layer_round ON builds(layer_id, round)"
    )
    op.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_builds_project_number ON builds(project_id, build_number)"
    )
    op.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_builds_external_key ON builds(external_key) "
        "WHERE external_key IS NOT NULL"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_builds_active ON builds(status) "
        "WHERE status IN ('pending', 'running')"
    )

    op.execute("""
        CREATE TABLE IF NOT EXISTS build_stage_results (
            id                  UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            build_id            UUID NOT NULL REFERENCES builds(id) ON DELETE CASCADE,
            stage_name          VARCHAR(20) NOT NULL CHECK (stage_name IN ('Build', 'SAM', 'Coverity')),
            stage_order         SMALLINT NOT NULL CHECK (stage_order BETWEEN 1 AND 3),
            status              VARCHAR(20) NOT NULL DEFAULT 'pending'
                                CHECK (status IN ('pending', 'running', 'success', 'failed', 'skipped')),
            error_count         INTEGER NOT NULL DEFAULT 0,
            warning_count       INTEGER NOT NULL DEFAULT 0,
            stage_result        JSONB,
            external_response   JSONB,
            log_url             TEXT,
            started_at          TIMESTAMPTZ,
            finished_at         TIMESTAMPTZ,
            duration_seconds    INTEGER,
            UNIQUE (build_id, stage_name)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS build_requests (
            id                  UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            queue_id            UUID REFERENCES build_queue(id) ON DELETE SET NULL,
            project_id          UUID NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
            layer_id            UUID NOT NULL REFERENCES layers(id) ON DELETE CASCADE,
            build_id            UUID REFERENCES builds(id) ON DELETE CASCADE,
            plan_key            VARCHAR(255),
            request_params      JSONB NOT NULL,
            request_status      VARCHAR(20) NOT NULL DEFAULT 'sent'
                                CHECK (request_status IN ('sent', 'accepted', 'rejected', 'timeout', 'error')),
            external_key        VARCHAR(255),
            external_number     INTEGER,
            error_message       TEXT,
            sent_at             TIMESTAMPTZ NOT NULL DEFAULT now(),
            responded_at        TIMESTAMPTZ
        )
    """)
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_build_requests_sent ON build_requests(sent_at) "
        "WHERE request_status = 'sent'"
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS build_requests")
    op.execute("DROP TABLE IF EXISTS build_stage_results")
    op.execute("DROP TABLE IF EXISTS builds")
    op.execute("DROP TABLE IF EXISTS build_queue")
    op.execute("DROP TABLE IF EXISTS layers")
    op.execute("DROP TABLE IF EXISTS projects")
    op.execute("DROP TABLE IF EXISTS users")
