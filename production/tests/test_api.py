from decimal import Decimal

from django.contrib.auth.models import Group
from django.test import TestCase
from rest_framework.test import APIClient

from production.models import Demand, ProductionOrder, Roll
from production.services import orders, stock_ledger
from production.signals import PRODUCTION_MANAGER_GROUP

from .helpers import add_roll, make_demand, make_user, setup_fabrics, stock_batch


class ProductionApiTests(TestCase):
    def setUp(self):
        self.raw, self.finished = setup_fabrics()
        self.manager = make_user("manager")
        self.manager.groups.add(Group.objects.get_or_create(name=PRODUCTION_MANAGER_GROUP)[0])
        self.clerk = make_user("clerk")
        self.client = APIClient()
        self.client.force_authenticate(self.manager)

    def weaving_order(self, required="100"):
        return orders.open_order(ProductionOrder.RAW_WEAVING, self.raw, Decimal(required))

    def test_anonymous_requests_are_rejected(self):
        client = APIClient()
        resp = client.get("/api/rolls/")
        self.assertIn(resp.status_code, (401, 403))

    def test_clerk_can_read_but_not_act(self):
        order = self.weaving_order()
        client = APIClient()
        client.force_authenticate(self.clerk)
        self.assertEqual(client.get("/api/production-orders/").status_code, 200)
        resp = client.post(f"/api/production-orders/{order.pk}/start/")
        self.assertEqual(resp.status_code, 403)
        order.refresh_from_db()
        self.assertEqual(order.status, ProductionOrder.PENDING)

    def test_weaving_lifecycle_over_http(self):
        order = self.weaving_order()
        resp = self.client.post(f"/api/production-orders/{order.pk}/start/")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "in_progress")

        payload = {
            "looms": [
                {"loom_number": "L1", "rolls": [{"length": "60"}]},
                {"loom_number": "L2", "rolls": [{"length": "40"}, {"length": "3", "grade": "C"}]},
            ]
        }
        resp = self.client.post(f"/api/production-orders/{order.pk}/complete/", payload, format="json")
        self.assertEqual(resp.status_code, 201)
        data = resp.json()
        self.assertEqual(data["status"], "completed")
        self.assertEqual(data["produced_quantity"], "103.00")
        self.assertEqual(len(data["rolls"]), 3)
        self.assertTrue(data["batch_number"].startswith("WEAVING-"))

        resp = self.client.post(f"/api/production-orders/{order.pk}/complete/", payload, format="json")
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["code"], "invalid_transition")
        self.assertEqual(Roll.objects.count(), 3)

    def test_invalid_payload_is_a_400(self):
        order = orders.start(self.weaving_order().pk)
        resp = self.client.post(f"/api/production-orders/{order.pk}/complete/", {"looms": []}, format="json")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["code"], "invalid")

    def test_unbalanced_coating_is_a_400(self):
        add_roll(stock_batch(self.raw), 100)
        order = orders.open_order(ProductionOrder.FINISH_COATING, self.finished, Decimal("100"), color="Navy")
        resp = self.client.post(f"/api/production-orders/{order.pk}/reserve-rolls/", {}, format="json")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(len(resp.json()["roll_inputs"]), 1)
        self.client.post(f"/api/production-orders/{order.pk}/start/")

        resp = self.client.post(
            f"/api/production-orders/{order.pk}/complete/",
            {"full_rolls": 1, "short_rolls": ["30"]},
            format="json",
        )
        self.assertEqual(resp.status_code, 400)
        body = resp.json()
        self.assertEqual(body["code"], "unbalanced_production")
        self.assertEqual(body["total_input"], "100.00")
        self.assertEqual(body["total_output"], "80.00")
        order.refresh_from_db()
        self.assertEqual(order.status, ProductionOrder.IN_PROGRESS)

    def test_release_rolls_endpoint(self):
        add_roll(stock_batch(self.raw), 100)
        order = orders.open_order(ProductionOrder.FINISH_COATING, self.finished, Decimal("100"), color="Navy")
        orders.reserve_input_rolls(order.pk)
        resp = self.client.post(f"/api/production-orders/{order.pk}/release-rolls/")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(Decimal(resp.json()["returned_quantity"]), Decimal("100"))
        self.assertEqual(resp.json()["roll_inputs"], [])

    def test_hold_resume_and_cascade_endpoints(self):
        order = self.weaving_order()
        self.assertEqual(self.client.post(f"/api/production-orders/{order.pk}/hold/").json()["status"], "on_hold")
        self.assertEqual(self.client.post(f"/api/production-orders/{order.pk}/resume/").json()["status"], "pending")
        resp = self.client.post(f"/api/production-orders/{order.pk}/cascade/")
        self.assertEqual(resp.status_code, 409)

    def test_allocate_endpoint(self):
        add_roll(stock_batch(self.finished, color="Navy"), 50)
        demand = make_demand(self.finished, "Navy", 20)
        resp = self.client.post(f"/api/demands/{demand.pk}/allocate/", {}, format="json")
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(Decimal(data["allocated"]), Decimal("20"))
        self.assertEqual(data["demand"]["status"], "fully_met")
        self.assertEqual(len(data["allocations"]), 1)

    def test_allocate_without_stock_is_not_an_error(self):
        demand = make_demand(self.finished, "Navy", 20)
        resp = self.client.post(f"/api/demands/{demand.pk}/allocate/", {}, format="json")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["code"], "no_available_stock")
        self.assertEqual(resp.json()["allocated"], "0.00")
        demand.refresh_from_db()
        self.assertEqual(demand.status, Demand.UNMET)

    def test_manual_allocate_endpoint(self):
        batch = stock_batch(self.finished, color="Navy")
        b_roll = add_roll(batch, 10, grade="B")
        demand = make_demand(self.finished, "Navy", 20)
        resp = self.client.post(
            f"/api/demands/{demand.pk}/manual-allocate/",
            {"rolls": [{"roll": b_roll.pk, "quantity": "10"}]},
            format="json",
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["demand"]["status"], "partially_met")

        resp = self.client.post(
            f"/api/demands/{demand.pk}/manual-allocate/",
            {"rolls": [{"roll": b_roll.pk, "quantity": "5"}]},
            format="json",
        )
        self.assertEqual(resp.status_code, 400)

    def test_sweep_endpoint(self):
        add_roll(stock_batch(self.finished, color="Navy"), 50)
        demand = make_demand(self.finished, "Navy", 30)
        resp = self.client.post(f"/api/fabrics/{self.finished.pk}/sweep/")
        self.assertEqual(resp.status_code, 200)
        results = resp.json()["results"]
        self.assertEqual([r["demand"]["id"] for r in results], [demand.pk])

    def test_roll_listing_filters(self):
        batch = stock_batch(self.finished, color="Navy")
        add_roll(batch, 50)
        add_roll(batch, 5, grade="B")
        add_roll(stock_batch(self.finished, color="Red"), 50)
        spent = add_roll(batch, 10)
        Roll.objects.filter(pk=spent.pk).update(status=Roll.USED, remaining_length=0, archived=True)

        navy = self.client.get("/api/rolls/", {"fabric": self.finished.pk, "color": "Navy"}).json()
        self.assertEqual(len(navy), 2)
        graded = self.client.get("/api/rolls/", {"color": "Navy", "grade": "B"}).json()
        self.assertEqual([r["quality_grade"] for r in graded], ["B"])
        everything = self.client.get("/api/rolls/", {"include_archived": "true"}).json()
        self.assertEqual(len(everything), 4)
        self.assertEqual(self.client.get(f"/api/rolls/{spent.pk}/").status_code, 200)

    def test_stock_views(self):
        add_roll(stock_batch(self.finished, color="Navy"), 50)
        aggs = self.client.get("/api/stock-aggregates/", {"fabric": self.finished.pk}).json()
        self.assertEqual([(a["color"], a["quantity"]) for a in aggs], [("Navy", "50.00")])
        moves = self.client.get("/api/stock-movements/", {"fabric": self.finished.pk}).json()
        self.assertEqual([m["movement_type"] for m in moves], ["production_in"])
        self.assertEqual(stock_ledger.stock_level(self.finished, "Navy"), Decimal("50"))

    def test_low_stock_endpoint(self):
        self.finished.minimum_stock = Decimal("100")
        self.finished.save()
        add_roll(stock_batch(self.finished, color="Navy"), 50)
        resp = self.client.get("/api/fabrics/low-stock/")
        self.assertEqual(resp.status_code, 200)
        rows = resp.json()
        self.assertEqual([r["fabric"] for r in rows], [self.finished.pk])
        self.assertEqual(Decimal(rows[0]["quantity"]), Decimal("50"))
        self.assertEqual(Decimal(rows[0]["minimum_stock"]), Decimal("100"))
