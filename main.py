from app import EngineThread, build_engine, make_app
from config import get_settings
from observability import setup_logging


def main():
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format, settings.engine_logging)
    eng = build_engine(settings)
    runner = EngineThread(eng, sweep_interval=settings.requesting_sweep_interval_ms / 1000)
    runner.start()
    app = make_app(eng, runner, settings)
    app.run(host=settings.host, port=settings.port, debug=False, threaded=True)


# Entrypoint
if __name__ == "__main__":
    main()
