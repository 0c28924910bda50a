from ordersync.models_sqlalchemy.models import OrderStatus
from ordersync.services.order_sync.status_map import map_external_status


def test_known_labels_map_regardless_of_case_and_accents():
    assert map_external_status("En attente") == (OrderStatus.PENDING, True)
    assert map_external_status("CONFIRMÉ") == (OrderStatus.CONFIRMED, True)
    assert map_external_status("  en   cours ") == (OrderStatus.IN_PROGRESS, True)
    assert map_external_status("Expédié") == (OrderStatus.SHIPPED, True)
    assert map_external_status("Livré") == (OrderStatus.DELIVERED, True)
    assert map_external_status("Annulé") == (OrderStatus.CANCELLED, True)
    assert map_external_status("Retourné") == (OrderStatus.RETURNED, True)


def test_en_dispatch_has_its_own_status():
    assert map_external_status("En dispatch") == (OrderStatus.DISPATCHED, True)


def test_internal_names_are_accepted():
    assert map_external_status("DISPATCHED") == (OrderStatus.DISPATCHED, True)
    assert map_external_status("in progress") == (OrderStatus.IN_PROGRESS, True)


def test_unknown_labels_never_raise():
    assert map_external_status("Perdu en mer") == (OrderStatus.UNKNOWN, False)
    assert map_external_status("") == (OrderStatus.UNKNOWN, False)
    assert map_external_status(None) == (OrderStatus.UNKNOWN, False)
    # The sentinel itself is not a recognized upstream label.
    assert map_external_status("UNKNOWN") == (OrderStatus.UNKNOWN, False)
