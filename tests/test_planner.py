from conftest import FakeRegistry, sample_registry
from automation_module_installer.models import DependencySpec, InstallationStatus, ModuleDescriptor, ResolvedEntry
from automation_module_installer.planner import plan_phases, planned_modules
from automation_module_installer.resolver import DependencyResolver, root_constraint


def _entry(name, version, depth, repository="PSGallery"):
    return ResolvedEntry(descriptor=ModuleDescriptor(name=name, version=version, repository=repository), depth=depth)


def _layout(phases):
    return [(phase.index, sorted(f"{m.name}@{m.version}" for m in phase.members)) for phase in phases]


def test_plan_groups_sample_tree_deepest_first():
    entries = DependencyResolver(sample_registry()).resolve("A", "PSGallery", root_constraint("A", "2.0"))
    phases = plan_phases(entries)
    assert _layout(phases) == [
        (2, ["D@1.0"]),
        (1, ["B@1.5", "C@3.0"]),
        (0, ["A@2.0"]),
    ]
    assert all(m.status == InstallationStatus.NOT_STARTED for m in planned_modules(phases))


def test_deepest_occurrence_wins():
    entries = [
        _entry("Root", "1.0", 0),
        _entry("Shared", "2.0", 1),
        _entry("Mid", "1.0", 1),
        _entry("Shared", "2.0", 2),
    ]
    phases = plan_phases(entries)
    assert _layout(phases) == [(2, ["Shared@2.0"]), (1, ["Mid@1.0"]), (0, ["Root@1.0"])]
    shared = [m for m in planned_modules(phases) if m.name == "Shared"]
    assert len(shared) == 1 and shared[0].phase == 2


def test_dedup_key_is_case_insensitive_and_version_normalized():
    entries = [
        _entry("Root", "1.0", 0),
        _entry("az.accounts", "2.0", 1),
        _entry("Az.Accounts", "2.0.0", 1, repository="psgallery"),
    ]
    modules = planned_modules(plan_phases(entries))
    assert [m.name for m in modules] == ["az.accounts", "Root"]


def test_different_versions_or_repositories_are_kept_apart():
    entries = [
        _entry("Root", "1.0", 0),
        _entry("Lib", "1.0", 1),
        _entry("Lib", "2.0", 1),
        _entry("Lib", "1.0", 1, repository="Internal"),
    ]
    assert len(planned_modules(plan_phases(entries))) == 4


def test_phases_strictly_descend_and_end_at_root():
    registry = FakeRegistry()
    registry.publish("Top", "1.0", [DependencySpec(name="L1"), DependencySpec(name="L3")])
    registry.publish("L1", "1.0", [DependencySpec(name="L2")])
    registry.publish("L2", "1.0", [DependencySpec(name="L3")])
    registry.publish("L3", "1.0")

    phases = plan_phases(DependencyResolver(registry).resolve("Top", "PSGallery"))

    indexes = [phase.index for phase in phases]
    assert indexes == sorted(indexes, reverse=True)
    assert len(set(indexes)) == len(indexes)
    assert indexes[-1] == 0
    assert _layout(phases)[0] == (3, ["L3@1.0"])


def test_empty_entries_give_no_phases():
    assert plan_phases([]) == []
