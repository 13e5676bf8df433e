import json
import logging
import signal

from volume_autoscaler.config.settings import get_settings
from volume_autoscaler.core.reconciler import Reconciler
from volume_autoscaler.core.scheduler import Scheduler
from volume_autoscaler.domain.intent_loader import load_intent
from volume_autoscaler.infra.kubernetes_client import KubernetesClient, load_config
from volume_autoscaler.observability.metrics import start_metrics_server

logger = logging.getLogger(__name__)


class _ReadOnlyStatus(KubernetesClient):
    """Used for file-based runs: the intent does not exist in the cluster, so status goes to stdout."""

    def patch_intent_status(self, namespace: str, name: str, status: dict) -> None:
        logger.debug(f"[{namespace}/{name}] status not written (intent loaded from file)")

    def record_event(self, intent, event_type: str, reason: str, message: str) -> None:
        logger.info(f"[{intent.namespace}/{intent.name}] {event_type} {reason}: {message}")


def run_once(path: str) -> None:
    settings = get_settings()
    reconciler = Reconciler(
        _ReadOnlyStatus(),
        dry_run=settings.dry_run,
        default_metrics_endpoint=settings.default_metrics_endpoint,
    )
    status = reconciler.reconcile(load_intent(path))
    print(json.dumps(status.to_dict(), indent=2))


def main():
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # --- Infrastructure ---
    load_config()

    if settings.intent_file:
        run_once(settings.intent_file)
        return

    start_metrics_server(settings.metrics_port)
    scheduler = Scheduler(KubernetesClient(), settings)

    def _shutdown(signum, _frame):
        logger.info(f"Received signal {signum}, shutting down")
        scheduler.stop()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    logger.info(f"Serving metrics on :{settings.metrics_port}")
    scheduler.run()


if __name__ == "__main__":
    main()
