import pytest

from k8s_scaler.declaration import DeclarationStore, parse_declaration
from k8s_scaler.errors import VerificationFailure
from k8s_scaler.mutator import (
    ClusterAddition,
    ClusterRemoval,
    DeclarationMutator,
    FieldChange,
    changes_between,
)

from conftest import VAGRANTFILE


@pytest.fixture
def mutator():
    return DeclarationMutator()


def changed_lines(before, after):
    return [(a, b) for a, b in zip(before.split("\n"), after.split("\n")) if a != b]


def test_value_edit_touches_a_single_line(mutator):
    updated = mutator.apply(VAGRANTFILE, [FieldChange("k8s-prod", "worker_count", 3)])
    assert changed_lines(VAGRANTFILE, updated) == [("    worker_count: 2,", "    worker_count: 3,")]
    assert len(updated) == len(VAGRANTFILE)
    assert parse_declaration(updated).require("k8s-prod").worker_count == 3


def test_edit_keeps_trailing_comment(mutator):
    text = VAGRANTFILE.replace("    master_count: 2,", "    master_count: 2,  # HA")
    updated = mutator.apply(text, [FieldChange("k8s-prod", "master_count", 3)])
    assert "    master_count: 3,  # HA" in updated.split("\n")


def test_last_field_without_comma(mutator):
    updated = mutator.apply(VAGRANTFILE, [FieldChange("k8s-prod", "context", "production")])
    assert changed_lines(VAGRANTFILE, updated) == [('    context: "prod"', '    context: "production"')]


def test_missing_key_is_inserted(mutator):
    updated = mutator.apply(VAGRANTFILE, [FieldChange("k8s-qa", "master_cpus", 4)])
    assert '  "k8s-qa" => {\n    master_cpus: 4,\n    master_count: 1,' in updated
    assert parse_declaration(updated).require("k8s-qa").master_resources.cpus == 4


def test_subnet_from_the_subnet_table_is_edited_in_place(mutator):
    updated = mutator.apply(VAGRANTFILE, [FieldChange("k8s-qa", "base_subnet", "192.168.60")])
    assert changed_lines(VAGRANTFILE, updated) == [('  "k8s-qa" => "192.168.52",', '  "k8s-qa" => "192.168.60",')]


def test_add_cluster(mutator):
    addition = ClusterAddition("k8s-dev", {"base_subnet": "192.168.53", "master_count": 1, "worker_count": 1})
    updated = mutator.apply(VAGRANTFILE, [addition])
    topology = parse_declaration(updated)
    assert topology.names == ["k8s-prod", "k8s-qa", "k8s-dev"]
    assert topology.require("k8s-dev").base_subnet == "192.168.53"
    mutator.check(updated, [addition])


def test_added_cluster_subnet_goes_into_the_subnet_table(mutator):
    addition = ClusterAddition("k8s-dev", {"base_subnet": "192.168.53", "master_count": 1, "worker_count": 1})
    updated = mutator.apply(VAGRANTFILE, [addition])
    lines = updated.split("\n")
    table = lines.index("CLUSTER_BASE_SUBNETS = {")
    assert lines[table + 1:table + 4] == [
        '  "k8s-qa" => "192.168.52",',
        '  "k8s-dev" => "192.168.53",',
        "}",
    ]
    dev_block = updated.split('"k8s-dev" => {')[1].split("}")[0]
    assert "base_subnet" not in dev_block


def test_added_cluster_keeps_subnet_inline_without_a_table(mutator):
    inline = VAGRANTFILE.split("CLUSTER_BASE_SUBNETS")[0].replace(
        '  "k8s-qa" => {\n', '  "k8s-qa" => {\n    base_subnet: "192.168.52",\n')
    addition = ClusterAddition("k8s-dev", {"base_subnet": "192.168.53", "master_count": 1, "worker_count": 1})
    updated = mutator.apply(inline, [addition])
    assert 'base_subnet: "192.168.53",' in updated
    assert parse_declaration(updated).require("k8s-dev").base_subnet == "192.168.53"


def test_remove_cluster_drops_its_subnet_entry(mutator):
    updated = mutator.apply(VAGRANTFILE, [ClusterRemoval("k8s-qa")])
    assert parse_declaration(updated).names == ["k8s-prod"]
    assert "k8s-qa" not in updated
    assert "Vagrant.configure" in updated


def test_check_requires_exact_values(mutator):
    with pytest.raises(VerificationFailure) as exc:
        mutator.check(VAGRANTFILE, [FieldChange("k8s-prod", "worker_count", 3)])
    assert exc.value.field == "worker_count"
    assert not mutator.verify(VAGRANTFILE, [FieldChange("k8s-prod", "context", "production")])
    assert mutator.verify(VAGRANTFILE, [FieldChange("k8s-qa", "worker_memory", 1024)])


def test_commit_backs_up_and_replaces(mutator, vagrantfile, tmp_path):
    store = DeclarationStore(vagrantfile, tmp_path / "backups")
    backup = mutator.commit(store, [FieldChange("k8s-qa", "worker_count", 3)])
    assert backup.read_text() == VAGRANTFILE
    assert parse_declaration(vagrantfile.read_text()).require("k8s-qa").worker_count == 3


def test_commit_without_changes_is_a_no_op(mutator, vagrantfile, tmp_path):
    store = DeclarationStore(vagrantfile, tmp_path / "backups")
    assert mutator.commit(store, []) is None
    assert store.list_backups() == []


class OffByOneMutator(DeclarationMutator):
    def apply(self, text, changes):
        return super().apply(text, [FieldChange(c.cluster, c.key, c.value + 1) for c in changes])


def test_failed_verification_leaves_the_file_untouched(vagrantfile, tmp_path):
    store = DeclarationStore(vagrantfile, tmp_path / "backups")
    with pytest.raises(VerificationFailure):
        OffByOneMutator().commit(store, [FieldChange("k8s-prod", "worker_count", 3)])
    assert vagrantfile.read_text() == VAGRANTFILE
    assert [p.name for p in tmp_path.iterdir() if p.name.endswith(".tmp")] == []


def test_changes_between(mutator):
    desired = mutator.apply(VAGRANTFILE, [
        FieldChange("k8s-prod", "worker_count", 3),
        ClusterRemoval("k8s-qa"),
        ClusterAddition("k8s-dev", {"base_subnet": "192.168.53", "master_count": 1, "worker_count": 0}),
    ])
    assert changes_between(VAGRANTFILE, desired) == [
        FieldChange("k8s-prod", "worker_count", 3),
        ClusterAddition("k8s-dev", {"base_subnet": "192.168.53", "master_count": 1, "worker_count": 0}),
        ClusterRemoval("k8s-qa"),
    ]
    assert changes_between(VAGRANTFILE, VAGRANTFILE) == []
