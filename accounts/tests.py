from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from django.test import TestCase
from django.urls import reverse

from .models import User
from .principal import Principal


class PrincipalTests(TestCase):
    def test_anonymous_user_has_no_principal(self):
        self.assertIsNone(Principal.from_user(AnonymousUser()))
        self.assertIsNone(Principal.from_user(None))

    def test_inactive_user_has_no_principal(self):
        user = get_user_model().objects.create_user(username="gone", password="pass12345", is_active=False)
        self.assertIsNone(Principal.from_user(user))

    def test_member_principal(self):
        user = get_user_model().objects.create_user(username="m1", password="pass12345")

        principal = Principal.from_user(user)

        self.assertEqual(principal, Principal(id=user.pk, role=User.Role.MEMBER))
        self.assertTrue(principal.is_member)
        self.assertFalse(principal.is_admin)

    def test_staff_is_treated_as_admin(self):
        user = get_user_model().objects.create_user(username="desk", password="pass12345", is_staff=True)

        principal = Principal.from_user(user)

        self.assertTrue(principal.is_admin)
        self.assertFalse(principal.is_member)

    def test_instructor_is_neither_member_nor_admin(self):
        user = get_user_model().objects.create_user(
            username="coach", password="pass12345", role=User.Role.INSTRUCTOR
        )

        principal = Principal.from_user(user)

        self.assertFalse(principal.is_member)
        self.assertFalse(principal.is_admin)


class UserDisplayTests(TestCase):
    def test_full_name_wins_over_legacy_names(self):
        user = User(username="u", full_name="  Иванова Анна ", first_name="Anna")
        self.assertEqual(user.get_full_name(), "Иванова Анна")
        self.assertEqual(user.get_short_name(), "Иванова")

    def test_str_falls_back_to_phone_then_username(self):
        self.assertEqual(str(User(username="u", phone="+79990001122")), "+79990001122")
        self.assertEqual(str(User(username="u")), "u")


class LoginTests(TestCase):
    def test_member_can_sign_in(self):
        get_user_model().objects.create_user(username="m1", password="pass12345")

        self.assertEqual(self.client.get(reverse("login")).status_code, 200)
        response = self.client.post(reverse("login"), {"username": "m1", "password": "pass12345"})

        self.assertEqual(response.status_code, 302)
        self.assertIn("_auth_user_id", self.client.session)
