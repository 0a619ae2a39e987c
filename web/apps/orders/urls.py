from django.urls import path
from .views import OrdersPingView, OrderContextView, OrderStatusView
from .views import OrdersCollectionView, RetrieveOrderView
app_name = "orders"

urlpatterns = [
    path("ping/", OrdersPingView.as_view(), name="ping"),
    path("context/", OrderContextView.as_view(), name="orders-context"),
    path("", OrdersCollectionView.as_view(), name="orders-collection"),  # GET list / POST create
    path("<uuid:oid>/", RetrieveOrderView.as_view(), name="orders-detail"),
    path("<uuid:oid>/status/", OrderStatusView.as_view(), name="orders-status"),
]
