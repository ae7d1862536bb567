"""Internationalisation helpers for KidPickup."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Mapping, Optional

from .exceptions import KidPickupError

_NB: Dict[str, str] = {
    "dashboard.staff.title": "Hentinger",
    "dashboard.parent.title": "Hente barn",
    "label.auto_approved": "Auto-godkjent",
    "label.approved_by_staff": "Godkjent",
    "label.parent_self": "Meg selv",
    "label.parent_relationship": "Forelder",
    "notice.pickup.requested": "Hentingsvarsel sendt! Personalet vil godkjenne hentingen.",
    "notice.pickup.auto_approved": "Hentingsvarsel sendt og godkjent.",
    "notice.pickup.approved": "Henting godkjent!",
    "notice.pickup.rejected": "Henting avvist",
    "notice.pickup.completed": "Barnet er hentet!",
    "notice.preference.saved": "Innstillingen er lagret.",
    "notice.consent.added": "{name} kan nå hente {child}",
    "notice.consent.revoked": "{name} kan ikke lenger hente {child}",
    "notice.attendance.checked_in": "{child} krysset inn",
    "notice.attendance.checked_out": "{child} krysset ut",
    "notice.chat.sent": "Melding sendt",
    "notice.chat.purged": "{count} gamle meldinger slettet",
    "notice.auth.signed_in": "Du er logget inn",
    "notice.auth.signed_out": "Du er logget ut",
    "notice.auth.role_selected": "Rolle valgt",
    "notice.admin.user_created": "Bruker opprettet",
    "notice.admin.role_assigned": "Rolle tildelt!",
    "notice.admin.user_removed": "{name} er fjernet fra systemet",
    "notice.admin.child_added": "Barn lagt til!",
    "notice.busy": "Handlingen behandles allerede.",
    "failure.pickup.request": "Kunne ikke sende hentingsvarsel",
    "failure.pickup.approve": "Kunne ikke godkjenne henting",
    "failure.pickup.reject": "Kunne ikke avvise henting",
    "failure.pickup.complete": "Kunne ikke markere som hentet",
    "failure.preference.save": "Kunne ikke lagre innstillingen",
    "failure.consent.add": "Kunne ikke legge til henteperson",
    "failure.consent.revoke": "Kunne ikke fjerne henteperson",
    "failure.attendance.check_in": "Kunne ikke krysse inn",
    "failure.attendance.check_out": "Kunne ikke krysse ut",
    "failure.chat.send": "Kunne ikke sende melding",
    "failure.admin.create_user": "Kunne ikke opprette bruker",
    "failure.admin.assign_role": "Kunne ikke tildele rolle",
    "failure.admin.remove_user": "Kunne ikke fjerne bruker",
    "failure.admin.add_child": "Kunne ikke legge til barn",
    "failure.auth.login": "Innlogging feilet",
    "failure.auth.role": "Kunne ikke bytte rolle",
    "failure.load": "Kunne ikke hente data",
    "failure.chat.purge": "Kunne ikke slette gamle meldinger",
    "error.generic": "Noe gikk galt",
    "error.validation": "Ugyldig data",
    "error.invalid_transition": "Hentingen er allerede behandlet",
    "error.not_linked": "Du er ikke registrert som forelder til dette barnet",
    "error.transport": "Ingen forbindelse med serveren. Prøv igjen.",
    "error.not_found": "Fant ikke oppføringen",
    "error.permission": "Du har ikke tilgang til denne handlingen",
    "error.locked": "For mange mislykkede forsøk. Prøv igjen senere.",
    "error.credentials": "Feil e-post eller passord",
    "validation.name.short": "Navn må være minst 2 tegn",
    "validation.name.long": "Navn kan ikke være lengre enn 100 tegn",
    "validation.name.characters": "Navn kan kun inneholde bokstaver, mellomrom, bindestrek og apostrof",
    "validation.relationship.short": "Relasjon må være minst 2 tegn",
    "validation.relationship.long": "Relasjon kan ikke være lengre enn 50 tegn",
    "validation.phone.invalid": "Ugyldig telefonnummer",
    "validation.phone.short": "Telefonnummer må være minst 8 tall",
    "validation.phone.long": "Telefonnummer kan ikke være lengre enn 20 tegn",
    "validation.email.invalid": "Ugyldig e-postadresse",
    "validation.password.short": "Passord må være minst 8 tegn",
    "validation.password.long": "Passordet er for langt",
    "validation.password.weak": "Passord må inneholde liten bokstav, stor bokstav og tall",
    "validation.notes.long": "Notater kan ikke være lengre enn 500 tegn",
    "validation.birth_date.invalid": "Ugyldig dato",
    "validation.message.short": "Meldingen kan ikke være tom",
    "validation.message.long": "Meldingen kan ikke være lengre enn 1000 tegn",
    "validation.estimate.invalid": "Ugyldig ankomsttid",
    "validation.estimate.range": "Ankomsttid må være innen 4 timer",
    "validation.consent.required": "Samtykke må gis før personen kan legges til",
    "validation.pickup_person.invalid": "Ukjent henteperson",
    "validation.pickup_person.no_consent": "Personen har ikke samtykke til å hente barnet",
    "validation.child.missing": "Ukjent barn",
    "validation.parent.missing": "Ukjent forelder",
    "validation.attendance.already_in": "Barnet er allerede krysset inn",
    "validation.attendance.not_in": "Barnet er ikke krysset inn",
    "validation.user.exists": "En bruker med denne e-postadressen finnes allerede",
    "validation.role.invalid": "Ugyldig rolle",
    "validation.role.not_held": "Du har ikke denne rollen",
    "validation.language.invalid": "Ukjent språk",
    "notice.language.saved": "Språket er lagret.",
    "failure.language": "Kunne ikke endre språk",
    "error.csrf": "Skjemaet er utløpt. Last siden på nytt.",
}

_EN: Dict[str, str] = {
    "dashboard.staff.title": "Pickups",
    "dashboard.parent.title": "Pick up child",
    "label.auto_approved": "Auto-approved",
    "label.approved_by_staff": "Approved by staff",
    "label.parent_self": "Myself",
    "label.parent_relationship": "Parent",
    "notice.pickup.requested": "Pickup request sent! Staff will approve the pickup.",
    "notice.pickup.auto_approved": "Pickup request sent and approved.",
    "notice.pickup.approved": "Pickup approved!",
    "notice.pickup.rejected": "Pickup rejected",
    "notice.pickup.completed": "The child has been picked up!",
    "notice.preference.saved": "Preference saved.",
    "notice.consent.added": "{name} may now pick up {child}",
    "notice.consent.revoked": "{name} may no longer pick up {child}",
    "notice.attendance.checked_in": "{child} checked in",
    "notice.attendance.checked_out": "{child} checked out",
    "notice.chat.sent": "Message sent",
    "notice.chat.purged": "{count} old messages deleted",
    "notice.auth.signed_in": "Signed in",
    "notice.auth.signed_out": "Signed out",
    "notice.auth.role_selected": "Role selected",
    "notice.admin.user_created": "User created",
    "notice.admin.role_assigned": "Role assigned!",
    "notice.admin.user_removed": "{name} has been removed",
    "notice.admin.child_added": "Child added!",
    "notice.busy": "This action is already in progress.",
    "failure.pickup.request": "Could not send the pickup request",
    "failure.pickup.approve": "Could not approve the pickup",
    "failure.pickup.reject": "Could not reject the pickup",
    "failure.pickup.complete": "Could not mark the pickup as completed",
    "failure.preference.save": "Could not save the preference",
    "failure.consent.add": "Could not add the pickup person",
    "failure.consent.revoke": "Could not remove the pickup person",
    "failure.attendance.check_in": "Could not check in",
    "failure.attendance.check_out": "Could not check out",
    "failure.chat.send": "Could not send the message",
    "failure.admin.create_user": "Could not create the user",
    "failure.admin.assign_role": "Could not assign the role",
    "failure.admin.remove_user": "Could not remove the user",
    "failure.admin.add_child": "Could not add the child",
    "failure.auth.login": "Sign-in failed",
    "failure.auth.role": "Could not switch role",
    "failure.load": "Could not load data",
    "failure.chat.purge": "Could not delete old messages",
    "error.generic": "Something went wrong",
    "error.validation": "Invalid data",
    "error.invalid_transition": "This pickup has already been handled",
    "error.not_linked": "You are not registered as a parent of this child",
    "error.transport": "Cannot reach the server. Please try again.",
    "error.not_found": "Record not found",
    "error.permission": "You are not allowed to do this",
    "error.locked": "Too many failed attempts. Try again later.",
    "error.credentials": "Wrong email or password",
    "validation.name.short": "Names must be at least 2 characters",
    "validation.name.long": "Names cannot be longer than 100 characters",
    "validation.name.characters": "Names may only contain letters, spaces, hyphens and apostrophes",
    "validation.relationship.short": "Relationship must be at least 2 characters",
    "validation.relationship.long": "Relationship cannot be longer than 50 characters",
    "validation.phone.invalid": "Invalid phone number",
    "validation.phone.short": "Phone numbers need at least 8 digits",
    "validation.phone.long": "Phone numbers cannot be longer than 20 characters",
    "validation.email.invalid": "Invalid email address",
    "validation.password.short": "Passwords must be at least 8 characters",
    "validation.password.long": "Password is too long",
    "validation.password.weak": "Passwords need a lower case letter, an upper case letter and a digit",
    "validation.notes.long": "Notes cannot be longer than 500 characters",
    "validation.birth_date.invalid": "Invalid date",
    "validation.message.short": "The message cannot be empty",
    "validation.message.long": "Messages cannot be longer than 1000 characters",
    "validation.estimate.invalid": "Invalid arrival estimate",
    "validation.estimate.range": "Arrival must be within 4 hours",
    "validation.consent.required": "Consent is required before adding the person",
    "validation.pickup_person.invalid": "Unknown pickup person",
    "validation.pickup_person.no_consent": "This person has no consent to pick up the child",
    "validation.child.missing": "Unknown child",
    "validation.parent.missing": "Unknown parent",
    "validation.attendance.already_in": "The child is already checked in",
    "validation.attendance.not_in": "The child is not checked in",
    "validation.user.exists": "A user with this email already exists",
    "validation.role.invalid": "Invalid role",
    "validation.role.not_held": "You do not hold this role",
    "validation.language.invalid": "Unknown language",
    "notice.language.saved": "Language saved.",
    "failure.language": "Could not change the language",
    "error.csrf": "The form has expired. Reload the page.",
}


class Translator:
    """Store translations for short interface strings."""

    def __init__(self, default_locale: str = "nb", *, translations: Optional[Mapping[str, Mapping[str, str]]] = None) -> None:
        self.default_locale = default_locale
        self._translations: Dict[str, Dict[str, str]] = {"nb": dict(_NB), "en": dict(_EN)}
        if translations:
            for locale, mapping in translations.items():
                self._translations.setdefault(locale, {}).update(mapping)

    def set_translation(self, locale: str, key: str, value: str) -> None:
        self._translations.setdefault(locale, {})[key] = value

    def translate(self, key: str, *, locale: Optional[str] = None, **params: object) -> str:
        target_locale = locale or self.default_locale
        language = self._translations.get(target_locale) or self._translations[self.default_locale]
        text = language.get(key, key)
        return text.format(**params) if params else text

    def error_message(self, error: KidPickupError, *, locale: Optional[str] = None) -> str:
        """Translate ``error``, falling back to its class level message."""

        key = error.message_key
        text = self.translate(key, locale=locale)
        if text == key:
            text = self.translate(type(error).message_key, locale=locale)
        return text

    def format_time(self, moment: Optional[datetime]) -> str:
        return moment.strftime("%H:%M") if moment else ""

    def available_locales(self) -> tuple[str, ...]:
        return tuple(sorted(self._translations))


__all__ = ["Translator"]
