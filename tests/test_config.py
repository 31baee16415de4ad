import json
import re
from datetime import datetime

import pytest

from dataflow_runner.config import ConfigResolver, vars_to_map
from dataflow_runner.errors import ConfigError
from dataflow_runner.models import ClusterConfig, PlaybookConfig

from conftest import record


def test_parse_cluster(resolver, cluster_data):
    config = resolver.parse_cluster(record("ClusterConfig", cluster_data))

    assert isinstance(config, ClusterConfig)
    assert config.log_uri == "s3://logging/"
    assert config.ec2.ami_version == "4.5.0"
    assert config.ec2.location.classic.availability_zone == "us-east-1a"
    assert config.ec2.location.vpc is None
    assert config.ec2.instances.task.bid == "0.015"
    assert config.ec2.instances.master.ebs_configuration is None
    assert config.tags == []
    assert config.credentials.access_key_id == "env"


def test_parse_playbook(resolver, playbook_data):
    playbook = resolver.parse_playbook(record("PlaybookConfig", playbook_data))

    assert isinstance(playbook, PlaybookConfig)
    assert [s.name for s in playbook.steps] == ["Combine Months", "Recover Events"]
    assert playbook.steps[0].action_on_failure == "CANCEL_AND_WAIT"


def test_template_variables(resolver, playbook_data):
    playbook_data["steps"][0]["arguments"] = ["--src", "s3n://{{ bucket }}/enriched/"]
    playbook = resolver.parse_playbook(record("PlaybookConfig", playbook_data), {"bucket": "my-bucket"})
    assert playbook.steps[0].arguments == ["--src", "s3n://my-bucket/enriched/"]


def test_template_functions(resolver, playbook_data, monkeypatch):
    monkeypatch.setenv("DATAFLOW_TEST_KEY", "AKIAEXAMPLE")
    playbook_data["credentials"]["accessKeyId"] = "{{ system_env('DATAFLOW_TEST_KEY') }}"
    playbook_data["credentials"]["secretAccessKey"] = "secret"
    playbook_data["steps"][0]["name"] = "{{ now_with_format('%Y') }}"

    playbook = resolver.parse_playbook(record("PlaybookConfig", playbook_data))

    assert playbook.credentials.access_key_id == "AKIAEXAMPLE"
    assert playbook.steps[0].name == str(datetime.now().year)


def test_undefined_variable_fails(resolver, playbook_data):
    playbook_data["steps"][0]["jar"] = "{{ missing }}"
    with pytest.raises(ConfigError, match="Couldn't render config template"):
        resolver.parse_playbook(record("PlaybookConfig", playbook_data))


def test_invalid_json(resolver):
    with pytest.raises(ConfigError, match="Invalid JSON"):
        resolver.parse_cluster('{"schema": "x", "data": ')


def test_non_object_document(resolver):
    with pytest.raises(ConfigError, match="must be a JSON object"):
        resolver.parse_cluster("[1, 2]")


def test_missing_required_field(resolver, cluster_data):
    del cluster_data["ec2"]["keyName"]
    with pytest.raises(ConfigError, match=r"Invalid ClusterConfig: ec2\.keyName"):
        resolver.parse_cluster(record("ClusterConfig", cluster_data))


def test_resolve_from_file(resolver, tmp_path, playbook_data):
    path = tmp_path / "playbook.json"
    path.write_text(json.dumps({"schema": "x", "data": playbook_data}))
    assert len(resolver.resolve_playbook(path).steps) == 2


def test_resolve_errors_name_the_file(resolver, tmp_path):
    path = tmp_path / "cluster.json"
    path.write_text("{")
    with pytest.raises(ConfigError, match=re.escape(f"{path}: Invalid JSON")):
        resolver.resolve_cluster(path)


def test_missing_file(resolver, tmp_path):
    with pytest.raises(ConfigError, match="Couldn't read config file"):
        resolver.resolve_cluster(tmp_path / "nope.json")


def test_resolver_is_reusable():
    resolver = ConfigResolver()
    assert resolver.render("{{ a }}", {"a": "1"}) == "1"
    assert resolver.render("{{ a }}", {"a": "2"}) == "2"


@pytest.mark.parametrize("raw, expected", [
    (None, {}),
    ("", {}),
    ("k1,v1", {"k1": "v1"}),
    ("k1,v1,k2,v2", {"k1": "v1", "k2": "v2"}),
    ("k1,,k2,v2", {"k1": "", "k2": "v2"}),
])
def test_vars_to_map(raw, expected):
    assert vars_to_map(raw) == expected


def test_vars_to_map_odd_count():
    with pytest.raises(ConfigError, match="even number"):
        vars_to_map("k1,v1,k2")
