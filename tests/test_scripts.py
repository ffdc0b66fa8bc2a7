from pharmacy_ledger.db.init_db import init_db
from pharmacy_ledger.db.session import create_session
from pharmacy_ledger.models.pharmacy_alerts import PharmacyAlertSettings
from pharmacy_ledger.models.pharmacy_inventory import PharmacyInventory
from pharmacy_ledger.scripts.check_stock_consistency import main as check_main


def test_init_db_creates_tables_and_settings_once(tmp_path, capsys):
    url = f"sqlite:///{tmp_path / 'fresh.db'}"
    init_db(url)
    init_db(url)

    assert "pharmacy_inventory_txns" in capsys.readouterr().out
    db = create_session(url)
    try:
        assert db.query(PharmacyAlertSettings).count() == 1
    finally:
        db.close()


class TestConsistencyCheck:
    def test_clean_ledger_exits_zero(self, db, engine, make_medicine, receive, sell, capsys):
        med = make_medicine()
        receive(med, 10)
        sell({"medicine_id": med.id, "quantity": 3})
        db.close()

        code = check_main(["--db-url", engine.url.render_as_string(hide_password=False)])

        out = capsys.readouterr().out
        assert code == 0
        assert f"OK    medicine={med.id} stored=7 replayed=7 batches=7" in out
        assert "1 checked, 0 drifted" in out

    def test_drift_exits_one(self, db, engine, make_medicine, receive, capsys):
        med = make_medicine()
        receive(med, 10)
        inv = db.query(PharmacyInventory).filter(PharmacyInventory.medicine_id == med.id).one()
        inv.current_stock = 12
        db.commit()
        db.close()

        code = check_main(["--db-url", engine.url.render_as_string(hide_password=False), "--medicine-id", str(med.id)])

        assert code == 1
        assert "DRIFT medicine=" in capsys.readouterr().out
