from pydantic import BaseModel


class DashboardStats(BaseModel):
    sales_today: float
    sales_week: float
    sales_month: float
    gross_profit: float
    net_profit: float
    product_count: int
    stock_value: float
    low_stock_count: int
    client_count: int
    open_credit: float
    month_expenses: float
