import httpx
import asyncio
import uuid
from rescue_dispatch.middleware.auth import create_access_token


BASE_URL = "http://localhost:8000"


async def safe_request(resp: httpx.Response, step: str):
    """Print response + fail loudly if error"""
    print(f"{step}: {resp.status_code}")

    try:
        print(resp.json())
    except Exception:
        print(resp.text)

    resp.raise_for_status()


async def main():

    async with httpx.AsyncClient(timeout=30.0) as client:

        # ---------------------------------------------------
        print("\n1️⃣ Checking Health...")
        resp = await client.get(f"{BASE_URL}/health")
        await safe_request(resp, "Health")

        # ---------------------------------------------------
        print("\n2️⃣ Registering Driver...")

        driver_payload = {
            "name": "Test Driver",
            "phone": f"+1{uuid.uuid4().int % 10000000000:010d}",
        }

        resp = await client.post(f"{BASE_URL}/v1/drivers", json=driver_payload)
        await safe_request(resp, "Register Driver")
        driver_id = resp.json()["id"]

        # ---------------------------------------------------
        print("\n3️⃣ Generating Tokens...")

        driver_token = create_access_token({"sub": driver_id, "role": "driver"})
        rider_id = str(uuid.uuid4())
        rider_token = create_access_token({"sub": rider_id, "role": "rider"})

        driver_headers = {"Authorization": f"Bearer {driver_token}"}
        rider_headers = {"Authorization": f"Bearer {rider_token}"}

        # ---------------------------------------------------
        print("\n4️⃣ Driver goes online...")
        resp = await client.patch(
            f"{BASE_URL}/v1/drivers/{driver_id}/availability",
            json={"is_online": True, "is_available": True},
            headers=driver_headers,
        )
        await safe_request(resp, "Driver Online")

        # ---------------------------------------------------
        print("\n5️⃣ Driver sends location...")
        resp = await client.post(
            f"{BASE_URL}/v1/drivers/{driver_id}/location",
            json={"lat": 37.7760, "lng": -122.4180, "heading": 90, "speed": 18},
            headers=driver_headers,
        )
        await safe_request(resp, "Send Location")

        # ---------------------------------------------------
        print("\n6️⃣ Rider requests a rescue...")

        rescue_payload = {
            "pickup": {"lat": 37.7749, "lng": -122.4194, "address": "Market St & 5th St"},
            "dropoff": {"lat": 37.7850, "lng": -122.4000, "address": "Bike Shop, Howard St"},
            "issue": {"type": "flat_tire", "description": "Rear tire flat", "severity": "medium"},
        }

        resp = await client.post(
            f"{BASE_URL}/v1/rescues",
            json=rescue_payload,
            headers={**rider_headers, "Idempotency-Key": str(uuid.uuid4())},
        )
        await safe_request(resp, "Create Rescue")
        rescue_id = resp.json()["id"]

        # ---------------------------------------------------
        print("\n7️⃣ Matching drivers...")
        resp = await client.post(f"{BASE_URL}/v1/rescues/{rescue_id}/match", headers=rider_headers)
        await safe_request(resp, "Match Rescue")

        # ---------------------------------------------------
        print("\n8️⃣ Driver accepts rescue...")
        resp = await client.post(f"{BASE_URL}/v1/rescues/{rescue_id}/accept", headers=driver_headers)
        await safe_request(resp, "Accept Rescue")

        # ---------------------------------------------------
        print("\n9️⃣ Driver works the rescue...")
        for next_status in ("en_route", "arrived", "in_progress"):
            resp = await client.post(
                f"{BASE_URL}/v1/rescues/{rescue_id}/transition",
                json={"status": next_status},
                headers=driver_headers,
            )
            await safe_request(resp, f"Transition {next_status}")

        resp = await client.get(f"{BASE_URL}/v1/location/journey/{rescue_id}", headers=rider_headers)
        await safe_request(resp, "Journey")

        # ---------------------------------------------------
        print("\n🔟 Completing rescue...")
        resp = await client.post(
            f"{BASE_URL}/v1/rescues/{rescue_id}/complete",
            json={"final_price": "30.00", "payment_method": "pm_card_visa"},
            headers=driver_headers,
        )
        await safe_request(resp, "Complete Rescue")
        payment_id = resp.json()["payment_id"]

        # ---------------------------------------------------
        print("\n1️⃣1️⃣ Rider pays...")
        resp = await client.post(
            f"{BASE_URL}/v1/payments/{payment_id}/charge",
            headers={**rider_headers, "Idempotency-Key": str(uuid.uuid4())},
            json={"payment_method": "pm_card_visa"},
        )
        await safe_request(resp, "Payment")

        print("\n✅ FLOW COMPLETED SUCCESSFULLY")


if __name__ == "__main__":
    asyncio.run(main())
