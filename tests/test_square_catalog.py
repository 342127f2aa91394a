"""
Tests for the donation catalog endpoints.
"""
from kioskpay.routes.square_catalog import extract_donation_items


def variation(variation_id, item_id, cents, name=None):
    return {
        "type": "ITEM_VARIATION",
        "id": variation_id,
        "item_variation_data": {
            "item_id": item_id,
            "name": name or f"${cents // 100} Donation",
            "pricing_type": "FIXED_PRICING",
            "price_money": {"amount": cents, "currency": "USD"},
        },
    }


DONATIONS_ITEM = {
    "type": "ITEM",
    "id": "ITEM_DONATIONS",
    "item_data": {"name": "Donations", "description": "Donation preset amounts"},
}


class TestExtractDonationItems:
    """Catalog objects flatten into the kiosk's preset amounts."""

    def test_related_variations(self):
        objects = [DONATIONS_ITEM, variation("V18", "ITEM_DONATIONS", 1800), variation("V36", "ITEM_DONATIONS", 3600)]

        items = extract_donation_items(objects)

        assert [item["amount"] for item in items] == [18.0, 36.0]
        assert items[0] == {
            "id": "V18",
            "parent_id": "ITEM_DONATIONS",
            "name": "$18 Donation",
            "amount": 18.0,
            "formatted_amount": "$18.00",
            "type": "preset",
        }

    def test_inline_variations(self):
        item = {
            **DONATIONS_ITEM,
            "item_data": {**DONATIONS_ITEM["item_data"], "variations": [variation("V5", "ITEM_DONATIONS", 500)]},
        }
        assert [entry["id"] for entry in extract_donation_items([item])] == ["V5"]

    def test_falls_back_to_donation_like_items(self):
        building_fund = {"type": "ITEM", "id": "ITEM_FUND", "item_data": {"name": "Building Fund donation"}}
        objects = [building_fund, variation("VF", "ITEM_FUND", 10000)]

        assert [entry["id"] for entry in extract_donation_items(objects)] == ["VF"]

    def test_variable_priced_variations_are_skipped(self):
        custom = {
            "type": "ITEM_VARIATION",
            "id": "VCUSTOM",
            "item_variation_data": {"item_id": "ITEM_DONATIONS", "pricing_type": "VARIABLE_PRICING"},
        }
        assert extract_donation_items([DONATIONS_ITEM, custom]) == []

    def test_unrelated_catalog(self):
        coffee = {"type": "ITEM", "id": "ITEM_COFFEE", "item_data": {"name": "Coffee"}}
        assert extract_donation_items([coffee, variation("VC", "ITEM_COFFEE", 300)]) == []


class TestCatalogEndpoints:
    def test_list(self, client, make_connection, square_api):
        make_connection()
        square_api.add(
            "POST",
            "/v2/catalog/search",
            {"objects": [DONATIONS_ITEM], "related_objects": [variation("V18", "ITEM_DONATIONS", 1800)]},
        )

        response = client.get("/api/square/catalog/list", params={"organization_id": "org_1"})

        assert response.status_code == 200
        assert [item["id"] for item in response.json()["donation_items"]] == ["V18"]

    def test_list_requires_connection(self, client):
        response = client.get("/api/square/catalog/list", params={"organization_id": "org_missing"})
        assert response.status_code == 404
        assert response.json()["detail"] == "Not connected to Square"

    def test_upsert_sends_fixed_price_variations(self, client, make_connection, square_api):
        make_connection()
        square_api.add(
            "POST",
            "/v2/catalog/object",
            {
                "catalog_object": {
                    "id": "ITEM_NEW",
                    "version": 1,
                    "item_data": {
                        "name": "Donations",
                        "variations": [variation("V18", "ITEM_NEW", 1800), variation("V50", "ITEM_NEW", 5000)],
                    },
                },
                "id_mappings": [{"client_object_id": "#Donations_x", "object_id": "ITEM_NEW"}],
            },
        )

        response = client.post("/api/square/catalog/upsert", json={"organization_id": "org_1", "amounts": [18, 50]})

        assert response.status_code == 200
        body = response.json()
        assert body["parent_item_id"] == "ITEM_NEW"
        assert [v["amount"] for v in body["variations"]] == [18.0, 50.0]

        sent = square_api.last_json("POST", "/v2/catalog/object")["object"]
        prices = [v["item_variation_data"]["price_money"]["amount"] for v in sent["item_data"]["variations"]]
        assert prices == [1800, 5000]
        assert {v["item_variation_data"]["pricing_type"] for v in sent["item_data"]["variations"]} == {"FIXED_PRICING"}

    def test_upsert_rejects_non_positive_amounts(self, client, make_connection):
        make_connection()
        response = client.post("/api/square/catalog/upsert", json={"organization_id": "org_1", "amounts": [18, 0]})
        assert response.status_code == 400

    def test_square_error_is_passed_through(self, client, make_connection, square_api):
        make_connection()
        square_api.fail("POST", "/v2/catalog/object", status_code=400, code="INVALID_VALUE", detail="Bad price")

        response = client.post("/api/square/catalog/upsert", json={"organization_id": "org_1", "amounts": [18]})

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["error"] == "Bad price"
        assert detail["square_error"]["code"] == "INVALID_VALUE"

    def test_delete(self, client, make_connection, square_api):
        make_connection()
        square_api.add("DELETE", "/v2/catalog/object/V18", {"deleted_object_ids": ["V18"]})

        response = client.post("/api/square/catalog/delete", json={"organization_id": "org_1", "object_id": "V18"})

        assert response.json() == {"success": True, "deleted_object_ids": ["V18"]}
