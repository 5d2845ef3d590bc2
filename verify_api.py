
import asyncio
import httpx

BASE_URL = "http://localhost:8000/api"

async def main():
    async with httpx.AsyncClient() as client:
        print("Creating debit account Cash...")
        resp = await client.post(f"{BASE_URL}/accounts", json={"name": "Cash", "direction": "debit", "closed_balance": 1000})
        print(resp.json())
        cash = resp.json()
        assert resp.status_code == 201

        print("\nCreating credit account Revenue...")
        resp = await client.post(f"{BASE_URL}/accounts", json={"name": "Revenue", "direction": "credit"})
        print(resp.json())
        revenue = resp.json()
        assert resp.status_code == 201

        print(f"\nPosting 500 from Revenue ({revenue['id']}) to Cash ({cash['id']})...")
        transaction_data = {
            "name": "Invoice 42",
            "entries": [
                {"direction": "debit", "account_id": cash['id'], "amount": 500},
                {"direction": "credit", "account_id": revenue['id'], "amount": 500},
            ]
        }
        resp = await client.post(f"{BASE_URL}/transactions", json=transaction_data)
        print(resp.json())
        assert resp.status_code == 201

        print("\nChecking Cash balance (Expected 1500)...")
        resp = await client.get(f"{BASE_URL}/accounts/{cash['id']}")
        print(resp.json())
        assert resp.json()['balance'] == 1500

        print("\nAttempting unbalanced transaction...")
        transaction_data['entries'][1]['amount'] = 400
        resp = await client.post(f"{BASE_URL}/transactions", json=transaction_data)
        print(resp.json())
        assert resp.status_code == 400

        print("\nRunning reconciliation...")
        resp = await client.post(f"{BASE_URL}/transactions/reconciliation")
        print(resp.json())
        assert resp.status_code == 200

        print("\nChecking balances after reconciliation (Expected 1500 / 500)...")
        resp = await client.get(f"{BASE_URL}/accounts/{cash['id']}")
        assert resp.json()['balance'] == 1500
        resp = await client.get(f"{BASE_URL}/accounts/{revenue['id']}")
        assert resp.json()['balance'] == 500

        print("\nVerifying postings for Cash...")
        resp = await client.get(f"{BASE_URL}/accounts/{cash['id']}/postings")
        postings = resp.json()
        print(f"Found {len(postings)} postings")
        for posting in postings:
            print(f" - {posting['direction']} {posting['amount']} reconciled_at={posting['reconciled_at']}")

        assert all(posting['reconciled_at'] for posting in postings)

if __name__ == "__main__":
    asyncio.run(main())
