import os

from dns_smart_block import rebuild_main


def test_rebuild_main_replays_the_event_log(mocker, engine):
    mocker.patch.dict(os.environ, {"DATABASE_URL": "sqlite://"}, clear=True)
    mocker.patch.object(rebuild_main, "configure_logging")
    mocker.patch.object(rebuild_main, "create_db_engine", return_value=engine)
    mocker.patch.object(engine, "dispose")
    rebuild = mocker.patch.object(rebuild_main.Projector, "rebuild", return_value=(5, 1))

    rebuild_main.main()

    rebuild.assert_called_once_with()
    engine.dispose.assert_called_once()


def test_rebuild_main_exits_on_configuration_error(mocker):
    mocker.patch.dict(os.environ, {}, clear=True)
    create_engine = mocker.patch.object(rebuild_main, "create_db_engine")

    rebuild_main.main()

    create_engine.assert_not_called()
