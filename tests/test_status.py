from gsr.cluster import LiveObject
from gsr.db import StatusSummary
from gsr.kinds import Kind, ResourceHealth
from gsr.ownership import markers_for
from gsr.status import build_snapshot, summarize, worst


def test_worst_follows_precedence():
    assert worst([]) == StatusSummary.HEALTHY
    assert worst([StatusSummary.HEALTHY, StatusSummary.PROGRESSING]) == StatusSummary.PROGRESSING
    assert worst([StatusSummary.PROGRESSING, StatusSummary.DEGRADED]) == StatusSummary.DEGRADED
    assert worst([StatusSummary.DEGRADED, StatusSummary.ERROR, StatusSummary.HEALTHY]) == StatusSummary.ERROR


def test_summarize_all_ready():
    healths = {"Network/backend": ResourceHealth(ready=True), "Workload/arena": ResourceHealth(ready=True)}
    assert summarize(healths) == (StatusSummary.HEALTHY, "2 resources ready")


def test_empty_deployment_is_healthy():
    assert summarize({})[0] == StatusSummary.HEALTHY


def test_summarize_names_the_culprits():
    healths = {
        "Network/backend": ResourceHealth(ready=True),
        "Workload/arena": ResourceHealth(ready=False, degraded=True, message="0/2 running, 2 failed tasks"),
        "Workload/lobby": ResourceHealth(ready=False, progressing=True, message="1/2 running"),
    }
    status, detail = summarize(healths)
    assert status == StatusSummary.DEGRADED
    assert detail == "Workload/arena: 0/2 running, 2 failed tasks"


def test_summarize_truncates_long_lists():
    healths = {f"Workload/w{i}": ResourceHealth(ready=False, message="starting") for i in range(7)}
    status, detail = summarize(healths)
    assert status == StatusSummary.PROGRESSING
    assert detail.endswith("(+2 more)")


def test_failed_apply_is_error():
    assert summarize({"Workload/arena": ResourceHealth(ready=True)}, apply_failed=True)[0] == StatusSummary.ERROR


def test_build_snapshot():
    live = [
        LiveObject(Kind.CONFIG, "eu1", "cfg", "c1", resource_version=4, labels=markers_for("dep-1", 2)),
        LiveObject(
            Kind.WORKLOAD,
            "eu1",
            "arena",
            "w1",
            labels=markers_for("dep-1", 1),
            spec={"replicas": 2},
            status={"desired_replicas": 2, "running_replicas": 0},
        ),
    ]
    snap = build_snapshot(live, {"Config/cfg": ResourceHealth(ready=True, message="present")}, generation=2)
    assert snap["generation"] == 2
    assert snap["resources"]["Config/cfg"]["generation_marker"] == 2
    assert snap["resources"]["Config/cfg"]["health"]["message"] == "present"
    # Health is derived from the object when none was passed in.
    arena = snap["resources"]["Workload/arena"]
    assert arena["uid"] == "w1"
    assert arena["health"]["progressing"] is True
