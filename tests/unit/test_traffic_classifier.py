"""
Unit tests for the net_cls traffic classifier.
"""

import pytest

from controller_errors import ExternalToolFailed
from traffic_classifier import TrafficClassifier


@pytest.fixture
def classifier(config, host):
    sleeps = []
    clf = TrafficClassifier(config, host, sleep=sleeps.append)
    clf.sleeps = sleeps
    return clf


class TestGroup:

    def test_ensure_group_sets_classid(self, classifier):
        classifier.ensure_group()
        assert classifier.current_classid() == 0x00110011

    def test_ensure_group_twice(self, classifier):
        classifier.ensure_group()
        classifier.ensure_group()
        assert classifier.current_classid() == 0x00110011

    def test_cgcreate_failure_raises(self, classifier, host):
        host.fail("cgcreate", "cgcreate: can't create cgroup lnclear: Cgroup is not mounted")
        with pytest.raises(ExternalToolFailed):
            classifier.ensure_group()

    def test_delete_group_twice(self, classifier, config):
        classifier.ensure_group()
        classifier.delete_group()
        classifier.delete_group()
        assert not config.cgroup_dir.exists()


class TestMembership:

    def test_attach_waits_then_adds(self, classifier, config):
        classifier.ensure_group()
        assert classifier.attach(4242)
        assert classifier.sleeps == [config.attach_delay]
        assert classifier.members() == [4242]

    def test_attach_without_settle(self, classifier):
        classifier.ensure_group()
        classifier.attach(1, settle=False)
        assert classifier.sleeps == []

    def test_attach_without_group(self, classifier):
        assert not classifier.attach(4242)
        assert classifier.members() == []


class TestUnits:

    def test_persistence_unit(self, classifier):
        unit = classifier.persistence_unit()
        assert "cgcreate -g net_cls:lnclear" in unit
        assert "echo 0x00110011 >" in unit
        assert "Type=oneshot" in unit

    def test_service_drop_in(self, classifier, config):
        text = classifier.service_drop_in()
        assert "Requires=wg-quick@lnclear.service" in text
        assert "After=wg-quick@lnclear.service" in text
        assert f"echo $MAINPID > {config.cgroup_dir}/tasks" in text
        assert "sleep 0 &&" in text
