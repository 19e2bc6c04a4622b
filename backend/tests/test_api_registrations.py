"""
Tests for the API registration endpoints (/api/v1/api-registrations).
"""

import pytest

pytestmark = pytest.mark.asyncio

BASE = "/api/v1/api-registrations"


class TestRegistrationEndpoints:
    async def test_create_returns_key_once(self, client, user_headers, make_configuration):
        config = await make_configuration()

        created = await client.post(
            BASE,
            json={"name": "Invoice API", "configuration_id": config.id},
            headers=user_headers,
        )

        assert created.status_code == 201
        body = created.json()
        assert body["message"] == "Store the API key now, it will not be shown again"
        data = body["data"]
        assert data["api_key"].startswith("athena_")
        assert data["base_url"] == f"http://test/api/external/{data['id']}"
        assert data["configuration_name"] == "Test Config"
        assert data["provider"] == "http-api"

        fetched = await client.get(f"{BASE}/{data['id']}", headers=user_headers)
        masked = fetched.json()["data"]["api_key"]
        assert masked != data["api_key"]
        assert masked.startswith("****")

        listed = await client.get(BASE, headers=user_headers)
        assert data["api_key"] not in listed.text

    async def test_create_with_foreign_configuration(
        self, client, user_headers, make_configuration
    ):
        config = await make_configuration(user_id="user-2")
        response = await client.post(
            BASE, json={"name": "x", "configuration_id": config.id}, headers=user_headers
        )
        assert response.status_code == 404

    async def test_new_key_works_on_external_route(
        self, client, user_headers, make_configuration
    ):
        config = await make_configuration()
        data = (
            await client.post(
                BASE, json={"name": "x", "configuration_id": config.id}, headers=user_headers
            )
        ).json()["data"]

        response = await client.get(
            f"/api/external/{data['id']}/info",
            headers={"Authorization": f"Bearer {data['api_key']}"},
        )
        assert response.status_code == 200

    async def test_patch_attach_and_detach_prompt(
        self, client, user_headers, make_configuration, make_registration, make_prompt
    ):
        registration = await make_registration(await make_configuration())
        prompt = await make_prompt()

        attached = await client.patch(
            f"{BASE}/{registration.id}",
            json={"system_prompt_id": prompt.id, "description": "v2"},
            headers=user_headers,
        )
        assert attached.json()["data"]["system_prompt_title"] == "Test Prompt"
        assert attached.json()["data"]["description"] == "v2"

        detached = await client.patch(
            f"{BASE}/{registration.id}", json={"system_prompt_id": None}, headers=user_headers
        )
        data = detached.json()["data"]
        assert data["system_prompt_id"] is None
        assert data["description"] == "v2"

    async def test_rotate_key(self, client, user_headers, make_configuration, make_registration):
        registration = await make_registration(await make_configuration())
        old_key = registration.api_key

        rotated = await client.post(f"{BASE}/{registration.id}/rotate-key", headers=user_headers)
        new_key = rotated.json()["data"]["api_key"]
        assert new_key != old_key

        old = await client.get(
            f"/api/external/{registration.id}/info",
            headers={"Authorization": f"Bearer {old_key}"},
        )
        new = await client.get(
            f"/api/external/{registration.id}/info",
            headers={"Authorization": f"Bearer {new_key}"},
        )
        assert old.status_code == 401
        assert new.status_code == 200

    async def test_delete(self, client, user_headers, make_configuration, make_registration):
        registration = await make_registration(await make_configuration())

        response = await client.delete(f"{BASE}/{registration.id}", headers=user_headers)
        assert response.status_code == 200

        missing = await client.get(f"{BASE}/{registration.id}", headers=user_headers)
        assert missing.status_code == 404

    async def test_other_users_registration_hidden(
        self, client, make_configuration, make_registration
    ):
        registration = await make_registration(
            await make_configuration(user_id="user-2"), user_id="user-2"
        )
        response = await client.get(f"{BASE}/{registration.id}", headers={"X-User-Id": "user-1"})
        assert response.status_code == 404
