import threading

from kubernetes import config as k8s_config

import hbs.app
from hbs.settings import Settings


class QuietHealthServer:
    instances = []

    def __init__(self, app, host="0.0.0.0", port=8080):
        self.started = False
        self.stopped = False
        QuietHealthServer.instances.append(self)

    def start(self):
        self.started = True
        return True

    def stop(self):
        self.stopped = True


def test_run_exits_1_without_cluster_config(monkeypatch, caplog):
    def not_in_cluster():
        raise k8s_config.ConfigException("Service host/port is not set.")

    monkeypatch.setattr(k8s_config, "load_incluster_config", not_in_cluster)
    monkeypatch.setattr(hbs.app, "HealthServer", QuietHealthServer)
    QuietHealthServer.instances.clear()

    assert hbs.app.run(Settings(), threading.Event()) == 1

    [health] = QuietHealthServer.instances
    assert health.started and health.stopped
    assert "Service host/port is not set" in caplog.text
