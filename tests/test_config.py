import logging

from mcu_gdb.config import EngineConfig


def test_defaults():
    config = EngineConfig.from_env({})

    assert config.gdb_path is None
    assert config.prompt == "(gdb)"
    assert config.command_timeout == 15.0
    assert config.run_timeout is None
    assert config.adapter == "st7"
    assert not config.verbose


def test_environment_overrides():
    config = EngineConfig.from_env(
        {
            "MCU_GDB_PATH": "/opt/stm8/bin/stm8-gdb",
            "MCU_GDB_COMMAND_TIMEOUT": "2.5",
            "MCU_GDB_RUN_TIMEOUT": "60",
            "MCU_GDB_VERBOSE": "yes",
            "MCU_GDB_ADAPTER": "stm8-sdcc",
            "MCU_GDB_LOGLEVEL": "debug",
            "MCU_GDB_IDLE_TIMEOUT": "0",
        }
    )

    assert config.gdb_path == "/opt/stm8/bin/stm8-gdb"
    assert config.command_timeout == 2.5
    assert config.run_timeout == 60.0
    assert config.verbose
    assert config.adapter == "stm8-sdcc"
    assert config.log_level == "DEBUG"
    assert config.idle_timeout == 0.0


def test_non_positive_timeout_waits_forever():
    assert EngineConfig.from_env({"MCU_GDB_COMMAND_TIMEOUT": "0"}).command_timeout is None


def test_invalid_values_fall_back(caplog):
    with caplog.at_level(logging.WARNING, logger="mcu_gdb.config"):
        config = EngineConfig.from_env({"MCU_GDB_COMMAND_TIMEOUT": "soon", "MCU_GDB_LAUNCH_DELAY": "x"})

    assert config.command_timeout == 15.0
    assert config.launch_delay == 0.5
    assert "MCU_GDB_COMMAND_TIMEOUT" in caplog.text
