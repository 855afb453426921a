"""German message catalogue; English is the source language"""

CATALOGUE = {
    # dashboard
    "Letterbox Sensor Status": "Briefkasten-Sensor-Status",
    "Device": "Gerät",
    "Status": "Status",
    "Last change": "Letzte Änderung",
    "Last received": "Zuletzt empfangen",
    "ago": "her",
    "Sensor": "Sensor",
    "Voltage": "Spannung",
    "Temperature": "Temperatur",
    "Counter": "Zähler",
    "no devices found": "keine Geräte gefunden",
    "no data received yet": "noch keine Daten empfangen",
    "full": "VOLL",
    "empty": "LEER",
    "filled": "GEFÜLLT",
    "emptied": "GELEERT",
    "Details": "Details",
    "Autoreload": "Automatisch neu laden",
    "on": "an",
    "off": "aus",
    "days": "Tage",
    "hours": "Stunden",
    "minutes": "Minuten",
    "seconds": "Sekunden",
    # notifications
    "boxstatus": "Briefkasten-Status",
    "at": "am",
    "At": "Am",
    # statistics / rrd controls
    "Statistics": "Statistiken",
    "Range": "Zeitraum",
    "Shift": "Verschieben",
    "Zoom": "Vergrößerung",
    "now": "jetzt",
    # userauth
    "Login failed": "Anmeldung nicht erfolgreich",
    "username empty": "Benutzername nicht angegeben",
    "password empty": "Passwort nicht angegeben",
    "authenticated as user": "authentifiziert als Benutzer",
    "permitted for devices": "erlaubt für Geräte",
    "authentication cookie expires in days": "Authentifizierungs-Cookie noch gültig für Tage",
    "Logout": "Abmelden",
    "Login": "Anmelden",
    "Authentication required": "Authentifizierung notwendig",
    "Username": "Benutzername",
    "Password": "Passwort",
    "Authentication problem": "Authentifizierungs-Problem",
    "Login successful": "Anmeldung erfolgreich",
    "Logout successful": "Abmeldung erfolgreich",
    "Logout already done": "Abmeldung bereits erfolgt",
    "username/password not accepted": "Benutzername/Passwort nicht akzeptiert",
    "will be redirected back": "wird nun zurückgeleitet",
    "Access denied": "Zugriff verweigert",
    "Enter the characters shown": "Angezeigte Zeichen eingeben",
    "Authentication required but not called via HTTPS": "Authentifizierung notwendig, aber nicht per HTTPS aufgerufen",
    "Not authenticated": "Nicht authentifiziert",
    "Change Password": "Passwort ändern",
    "last login longer ago, please use logout/login to activate password change option": "letzte Anmeldung zu lange her, bitte ab- und wieder anmelden, um das Passwort zu ändern",
    "Password change is managed by the administrator of the user file": "Passwortänderungen erfolgen durch den Verwalter der Benutzerdatei",
    "ALL": "ALLE",
    "NONE": "KEINE",
    "investigate error log": "Fehlerprotokoll prüfen",
    "login session invalid, will be redirected soon": "Anmeldesitzung ungültig, Weiterleitung erfolgt gleich",
    "login session expired, will be redirected soon": "Anmeldesitzung abgelaufen, Weiterleitung erfolgt gleich",
    "login session expired or cookies disabled, will be redirected soon": "Anmeldesitzung abgelaufen oder Cookies deaktiviert, Weiterleitung erfolgt gleich",
    "username/password not accepted from cookie": "Benutzername/Passwort aus Cookie nicht akzeptiert",
    "device not accepted": "Gerät nicht akzeptiert",
    "device not found": "Gerät nicht gefunden",
    "unsupported content": "nicht unterstützter Inhalt",
    "unsupported POST data": "nicht unterstützte POST-Daten",
    "Major configuration problem (investigate error log)": "Schwerwiegendes Konfigurationsproblem (Fehlerprotokoll prüfen)",
    "major problem found": "schwerwiegendes Problem gefunden",
}

SUPPORTED_LANGUAGES = ("en", "de")


def translate(text: str, language: str = "en") -> str:
    if language == "de":
        return CATALOGUE.get(text, text)
    return text


def language_from_header(accept_language: str) -> str:
    if accept_language and accept_language.strip().lower().startswith("de"):
        return "de"
    return "en"
