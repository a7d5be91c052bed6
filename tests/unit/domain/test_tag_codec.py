"""Unit tests for platform tag encoding."""

from __future__ import annotations

import copy

import pytest

from tfinstance.domain.services.tag_codec import TagCodec


@pytest.fixture
def codec() -> TagCodec:
    return TagCodec()


class TestMapStyleTags:
    def test_merge_creates_tags(self, codec: TagCodec) -> None:
        props: dict = {}
        codec.merge("aws_instance", props, {"Name": "instance-1"})
        assert props == {"tags": {"Name": "instance-1"}}

    def test_merge_new_values_win(self, codec: TagCodec) -> None:
        props = {"tags": {"team": "x", "env": "dev"}}
        codec.merge("google_compute_instance", props, {"env": "prod"})
        assert props["tags"] == {"team": "x", "env": "prod"}

    def test_parse_stringifies(self, codec: TagCodec) -> None:
        props = {"tags": {"count": 3, "enabled": True}}
        assert codec.parse("azurerm_virtual_machine", props) == {"count": "3", "enabled": "true"}

    def test_parse_invalid_container(self, codec: TagCodec) -> None:
        assert codec.parse("aws_instance", {"tags": ["a:b"]}) == {}

    def test_merge_invalid_container_left_alone(self, codec: TagCodec) -> None:
        props = {"tags": "oops"}
        codec.merge("aws_instance", props, {"a": "b"})
        assert props["tags"] == "oops"

    def test_attach_keeps_commas(self, codec: TagCodec) -> None:
        props: dict = {}
        codec.merge("aws_instance", props, {"infrakit.attach": "a,b"})
        assert props["tags"]["infrakit.attach"] == "a,b"


class TestListStyleTags:
    def test_merge_sorted_and_lowercased(self, codec: TagCodec) -> None:
        props = {"tags": ["zone:east", "Team:x"]}
        codec.merge("softlayer_virtual_guest", props, {"Name": "instance-1", "TEAM": "y"})
        assert props["tags"] == ["name:instance-1", "team:y", "zone:east"]

    def test_attach_written_with_spaces(self, codec: TagCodec) -> None:
        props: dict = {}
        codec.merge("ibm_compute_vm_instance", props, {"infrakit.attach": "instance-1-dedicated,scope-x"})
        assert props["tags"] == ["infrakit.attach:instance-1-dedicated scope-x"]

    def test_parse_restores_commas(self, codec: TagCodec) -> None:
        props = {"tags": ["infrakit.attach:a b", "name:instance-1"]}
        assert codec.parse("softlayer_virtual_guest", props) == {
            "infrakit.attach": "a,b",
            "name": "instance-1",
        }

    def test_parse_bare_key_and_colon_in_value(self, codec: TagCodec) -> None:
        props = {"tags": ["swarm", "url:http://host:8080"]}
        assert codec.parse("softlayer_virtual_guest", props) == {
            "swarm": "",
            "url": "http://host:8080",
        }

    def test_empty_value_written_as_bare_key(self, codec: TagCodec) -> None:
        props: dict = {}
        codec.merge("softlayer_virtual_guest", props, {"swarm": ""})
        assert props["tags"] == ["swarm"]

    def test_parse_invalid_container(self, codec: TagCodec) -> None:
        assert codec.parse("softlayer_virtual_guest", {"tags": {"a": "b"}}) == {}


class TestMergeIdempotence:
    @pytest.mark.parametrize(
        "vm_type, initial",
        [
            ("aws_instance", {"tags": {"team": "x"}}),
            ("digitalocean_droplet", {}),
            ("softlayer_virtual_guest", {"tags": ["team:x", "bare"]}),
            ("ibm_compute_vm_instance", {}),
        ],
    )
    def test_merge_twice_equals_once(self, codec: TagCodec, vm_type: str, initial: dict) -> None:
        tags = {"Name": "instance-1", "infrakit.attach": "a,b", "LogicalID": "node1"}
        once = codec.merge(vm_type, copy.deepcopy(initial), tags)
        twice = codec.merge(vm_type, codec.merge(vm_type, copy.deepcopy(initial), tags), tags)
        assert once == twice

    @pytest.mark.parametrize("vm_type", ["aws_instance", "softlayer_virtual_guest"])
    def test_merged_tags_parse_back(self, codec: TagCodec, vm_type: str) -> None:
        props = codec.merge(vm_type, {}, {"team": "x", "infrakit.attach": "a,b"})
        assert codec.parse(vm_type, props) == {"team": "x", "infrakit.attach": "a,b"}


class TestLogicalID:
    def test_map_style(self, codec: TagCodec) -> None:
        assert codec.logical_id("aws_instance", {"tags": {"LogicalID": "node1"}}) == "node1"

    def test_list_style_lowercased_key(self, codec: TagCodec) -> None:
        assert codec.logical_id("softlayer_virtual_guest", {"tags": ["logicalid:node1"]}) == "node1"

    def test_missing(self, codec: TagCodec) -> None:
        assert codec.logical_id("aws_instance", {"tags": {"Name": "x"}}) is None
        assert codec.logical_id("aws_instance", {}) is None


class TestUnsupportedType:
    def test_merge_and_parse_ignore_unknown_type(self, codec: TagCodec) -> None:
        props = {"tags": {"a": "b"}}
        codec.merge("aws_eip", props, {"c": "d"})
        assert props == {"tags": {"a": "b"}}
        assert codec.parse("aws_eip", props) == {}
