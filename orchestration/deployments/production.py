from app.config import get_settings
from orchestration.flows.experiment_completion import experiment_completion_sweep

settings = get_settings()


if __name__ == "__main__":
    # Long-running process that triggers the sweep on the monitor interval
    experiment_completion_sweep.serve(
        name="experiment-completion-scheduled",
        interval=settings.EXPERIMENT_MONITOR_INTERVAL_SECONDS,
        tags=["production", "experiments"],
    )
