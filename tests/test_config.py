import logging
from pathlib import Path

import pytest

from pairchat import DEFAULT_STUN, PairchatConfig
from pairchat.main import load_config, parse_args
from pairchat.utils.logging import configure_logging, resolve_level
from pairchat.utils.pools import DEFAULT_POOLS, PoolStore, split_pools


def test_defaults_run_manual_mode(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("PAIRCHAT_HOME", str(tmp_path / "home"))

    config = PairchatConfig()

    assert config.mode == "manual"
    assert config.ice.stun == DEFAULT_STUN
    assert config.transfer.chunk_size == 16_384
    assert config.transfer.buffer_threshold == 65_536
    assert config.media.audio is False and config.media.video is False
    assert config.pools_path == tmp_path / "home" / "pools.txt"


def test_yaml_sections_are_merged_over_defaults(tmp_path: Path) -> None:
    path = tmp_path / "pairchat.yaml"
    path.write_text(
        "\n".join(
            [
                "mode: Pool",
                f"data-dir: {tmp_path}",
                "ice:",
                "  turn: turn:turn.example.com",
                "transfer:",
                "  chunk_size: 8192",
                "media:",
                "  audio: true",
                "  video: true",
                "  camera:",
                "    device: /dev/video0",
                "    format: v4l2",
                "matchmaking:",
                "  client: tracker:Client",
                "  peer: tracker:Peer",
            ]
        ),
        encoding="utf-8",
    )

    config = PairchatConfig.from_yaml(path)

    assert config.mode == "pool"
    assert config.data_dir == tmp_path
    assert config.ice.turn == "turn:turn.example.com"
    assert config.ice.stun == DEFAULT_STUN
    assert config.transfer.chunk_size == 8192
    assert config.transfer.buffer_threshold == 65_536
    assert config.media.video is True
    assert config.media.audio is True
    assert config.media.camera.device == "/dev/video0"
    assert config.matchmaking.client == "tracker:Client"


def test_unknown_key_is_rejected() -> None:
    with pytest.raises(ValueError, match="Unknown configuration key 'colour'"):
        PairchatConfig.from_dict({"ice": {"colour": "blue"}})


def test_bad_mode_is_rejected() -> None:
    with pytest.raises(ValueError):
        PairchatConfig(mode="broadcast")


def test_non_mapping_yaml_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(ValueError):
        PairchatConfig.from_yaml(path)


def test_load_config_applies_mode_override(tmp_path: Path) -> None:
    path = tmp_path / "pairchat.yaml"
    path.write_text(f"data_dir: {tmp_path}\n", encoding="utf-8")

    config = load_config(str(path), mode="pool")

    assert config.mode == "pool"
    assert config.data_dir == tmp_path


def test_parse_args_defaults() -> None:
    args = parse_args([])
    assert args.port == 8765
    assert args.mode is None

    with pytest.raises(SystemExit):
        parse_args(["--mode", "broadcast"])


def test_pool_store_round_trip(tmp_path: Path) -> None:
    store = PoolStore(tmp_path / "nested" / "pools.txt")

    assert store.raw() == ""
    assert store.load() == list(DEFAULT_POOLS)

    saved = store.save("wss://one.example\n\n  wss://two.example  \n")

    assert saved == ["wss://one.example", "wss://two.example"]
    assert store.load() == saved
    assert store.raw() == "wss://one.example\nwss://two.example"


def test_pool_store_empty_save_falls_back_to_defaults(tmp_path: Path) -> None:
    store = PoolStore(tmp_path / "pools.txt")

    assert store.save([" ", ""]) == list(DEFAULT_POOLS)
    assert store.raw() == ""

    assert store.restore_defaults() == list(DEFAULT_POOLS)
    assert split_pools(store.raw()) == list(DEFAULT_POOLS)


def test_resolve_level() -> None:
    assert resolve_level("debug") == logging.DEBUG
    assert resolve_level(logging.WARNING) == logging.WARNING
    with pytest.raises(ValueError):
        resolve_level("chatty")


def test_configure_logging_respects_existing_handlers(monkeypatch: pytest.MonkeyPatch) -> None:
    root = logging.getLogger()
    handler = logging.NullHandler()
    monkeypatch.setattr(root, "handlers", [handler])
    level = root.level

    configure_logging("DEBUG")

    assert root.handlers == [handler]
    assert root.level == level
