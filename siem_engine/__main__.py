"""Run the engine service: python -m siem_engine"""

from siem_engine.services.runner import run

if __name__ == "__main__":
    run()
