from django.urls import path
from .views import CardPaymentView, CheckoutView, MercadoPagoWebhookView, RetrieveOrderView

app_name = "checkout"

urlpatterns = [
    path("checkout/", CheckoutView.as_view(), name="checkout"),
    path("orders/<uuid:oid>/", RetrieveOrderView.as_view(), name="orders-detail"),
    path("orders/<uuid:oid>/card-payment/", CardPaymentView.as_view(), name="orders-card-payment"),
    path("webhooks/mercadopago/", MercadoPagoWebhookView.as_view(), name="webhooks-mercadopago"),
]
