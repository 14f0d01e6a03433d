import pytest

from uncflow.config import (
    ExportConfig,
    detect_online_cpus,
    detect_sockets,
    parse_cpu_list,
)


def _topology(root, cpu, socket):
    path = root / f"cpu{cpu}" / "topology"
    path.mkdir(parents=True)
    (path / "physical_package_id").write_text(f"{socket}\n")


def test_parse_cpu_list_ranges():
    assert parse_cpu_list("0-3,8-11") == [0, 1, 2, 3, 8, 9, 10, 11]


def test_parse_cpu_list_single_and_whitespace():
    assert parse_cpu_list(" 5\n") == [5]


@pytest.mark.parametrize("text", ["", "a", "1-x", "1,,2", "-3"])
def test_parse_cpu_list_rejects_malformed(text):
    with pytest.raises(ValueError):
        parse_cpu_list(text)


def test_detect_online_cpus_reads_file(tmp_path):
    (tmp_path / "online").write_text("0-2\n")
    assert detect_online_cpus(tmp_path) == [0, 1, 2]


def test_detect_online_cpus_falls_back(tmp_path):
    assert detect_online_cpus(tmp_path) == list(range(8))


def test_detect_online_cpus_falls_back_on_garbage(tmp_path):
    (tmp_path / "online").write_text("garbage")
    assert detect_online_cpus(tmp_path) == list(range(8))


def test_detect_sockets_sorted_unique(tmp_path):
    _topology(tmp_path, 0, 1)
    _topology(tmp_path, 1, 0)
    _topology(tmp_path, 2, 1)
    assert detect_sockets([0, 1, 2], tmp_path) == [0, 1]


def test_detect_sockets_defaults_to_zero(tmp_path):
    assert detect_sockets([0, 1], tmp_path) == [0]


def test_labels_generated_from_cores():
    config = ExportConfig([0], [2, 7])
    assert config.core_labels == {2: "core_2", 7: "core_7"}


def test_explicit_labels_kept():
    config = ExportConfig([0], [1], {1: "db"})
    assert config.core_labels == {1: "db"}


def test_auto_detect(tmp_path):
    (tmp_path / "online").write_text("0-1")
    _topology(tmp_path, 0, 0)
    _topology(tmp_path, 1, 1)
    config = ExportConfig.auto_detect(tmp_path)
    assert config.cores == [0, 1]
    assert config.sockets == [0, 1]
    assert set(config.core_labels) == {0, 1}


def test_auto_detect_without_sysfs(tmp_path):
    config = ExportConfig.auto_detect(tmp_path)
    assert config.cores == list(range(8))
    assert config.sockets == [0]