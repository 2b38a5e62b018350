import logging
from pathlib import Path

from agency.core.logging_utils import LogConfig, log_event, setup_rotating_logger


def test_rotating_loggers_are_isolated(tmp_path: Path):
    log_a = tmp_path / "a.log"
    log_b = tmp_path / "b.log"
    cfg_a = LogConfig(path=log_a, max_bytes=80, backup_count=1)
    cfg_b = LogConfig(path=log_b, max_bytes=40, backup_count=2)

    logger_a = setup_rotating_logger("agency-test:a", cfg_a)
    logger_b = setup_rotating_logger("agency-test:b", cfg_b)

    logger_a.info("first")
    logger_b.info("second")

    assert log_a.exists()
    assert log_b.exists()
    assert logger_a.handlers[0] is not logger_b.handlers[0]

    # Rotation should be contained per logger
    for _ in range(10):
        logger_b.info("x" * 20)
    logger_b.handlers[0].flush()
    assert (tmp_path / "b.log.1").exists()
    assert not (tmp_path / "a.log.1").exists()

    # Reusing the same name reuses the same handler
    same_logger = setup_rotating_logger("agency-test:a", cfg_a)
    assert same_logger is logger_a
    assert len(same_logger.handlers) == 1


def test_log_config_for_data_dir(tmp_path: Path):
    cfg = LogConfig.for_data_dir(tmp_path)
    assert cfg.path == tmp_path / "logs" / "agency.log"


def test_log_event_formats_sorted_json_fields(tmp_path: Path):
    log_path = tmp_path / "events.log"
    logger = setup_rotating_logger("agency-test:events", LogConfig(path=log_path))

    log_event(
        logger,
        logging.INFO,
        "run.worktree_created",
        run_id="20260110120000-a3f2",
        worktree_path=Path("/tmp/wt"),
        exit_code=0,
    )
    log_event(logger, logging.DEBUG, "hidden", value=1)
    logger.handlers[0].flush()

    text = log_path.read_text(encoding="utf-8")
    assert (
        'run.worktree_created exit_code=0 run_id="20260110120000-a3f2" '
        'worktree_path="/tmp/wt"'
    ) in text
    assert "hidden" not in text
