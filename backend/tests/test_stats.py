"""Tests for the dashboard and sales statistics."""

import pytest
from httpx import AsyncClient

from app.models.sale import SaleType


@pytest.mark.integration
@pytest.mark.asyncio
class TestDashboard:
    """Figures reported by /api/stats."""

    async def test_empty_shop(self, client: AsyncClient, auth_headers: dict):
        response = await client.get("/api/stats/dashboard", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["sales_today"] == 0
        assert data["product_count"] == 0
        assert data["open_credit"] == 0

    async def test_dashboard_figures(
        self, client: AsyncClient, auth_headers: dict, ledger, product, customer
    ):
        """Cash 3 and credit 2 at 1000 (cost 800), one 100 expense."""
        await ledger.create_sale(product.id, 3, SaleType.CASH)
        await ledger.create_sale(product.id, 2, SaleType.CREDIT, client_id=customer.id)
        await client.post(
            "/api/expenses/",
            headers=auth_headers,
            json={"description": "Sacs", "amount": 100, "category": "Fournitures"},
        )

        response = await client.get("/api/stats/dashboard", headers=auth_headers)

        data = response.json()["data"]
        assert data["sales_today"] == 5000
        assert data["sales_week"] == 5000
        assert data["sales_month"] == 5000
        assert data["gross_profit"] == 1000
        assert data["month_expenses"] == 100
        assert data["net_profit"] == 900
        assert data["product_count"] == 1
        assert data["stock_value"] == 4000
        assert data["low_stock_count"] == 1
        assert data["client_count"] == 1
        assert data["open_credit"] == 2000

    async def test_paid_credit_leaves_open_total(
        self, client: AsyncClient, auth_headers: dict, ledger, product, customer
    ):
        result = await ledger.create_sale(product.id, 2, SaleType.CREDIT, client_id=customer.id)
        await ledger.pay_credit(result.credit.id, 500)

        response = await client.get("/api/stats/dashboard", headers=auth_headers)

        assert response.json()["data"]["open_credit"] == 1500

    async def test_sales_periods(self, client: AsyncClient, auth_headers: dict, ledger, product):
        await ledger.create_sale(product.id, 1)

        response = await client.get("/api/stats/sales", headers=auth_headers)

        data = response.json()["data"]
        assert data["today"] == {"total": 1000, "count": 1}
        assert data["week"] == {"total": 1000, "count": 1}
        assert data["month"] == {"total": 1000, "count": 1}

    async def test_cashier_cannot_read_stats(self, client: AsyncClient, cashier_headers: dict):
        response = await client.get("/api/stats/dashboard", headers=cashier_headers)

        assert response.status_code == 403
