from decimal import Decimal

from django.test import TestCase
from rest_framework.test import APIClient

from account.models import User


class AccountTests(TestCase):
    def setUp(self):
        self.client = APIClient()

    def test_new_user_is_buyer_with_no_refunds(self):
        user = User.objects.create_user(email="Buyer@Example.com", password="Pass123!")
        self.assertEqual(user.role, User.Role.BUYER)
        self.assertEqual(user.refunds, Decimal("0.00"))
        self.assertEqual(str(user), "Buyer@example.com")

    def test_login_returns_token_pair(self):
        User.objects.create_user(email="seller@example.com", password="Pass123!", role=User.Role.SELLER)

        resp = self.client.post(
            "/auth/login/",
            {"email": "seller@example.com", "password": "Pass123!"},
            format="json",
        )

        self.assertEqual(resp.status_code, 200, resp.data)
        self.assertIn("access", resp.data)
        self.assertIn("refresh", resp.data)
