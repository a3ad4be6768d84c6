import configparser
from datetime import date
from getpass import getpass

from models import DEFAULT_CHECK_INTERVAL_SECONDS, DEFAULT_COUNTRY


def run_cli_setup_wizard(job_path: str = "job.ini", template_path: str = "job.ini.template") -> None:
    parser = configparser.ConfigParser()
    parser.optionxform = str
    parser.read([template_path, job_path])
    defaults = parser["DEFAULT"]

    def _get(name: str, fallback: str = "") -> str:
        for key, value in defaults.items():
            if key.upper() == name:
                return str(value).strip()
        return fallback

    def _set(name: str, value: str) -> None:
        for key in list(defaults.keys()):
            if key.upper() == name:
                defaults[key] = value
                return
        defaults[name] = value

    def _prompt(name: str, label: str, *, secret: bool = False, required: bool = True, fallback: str = "") -> str:
        current = _get(name, fallback)
        prompt = f"{label}"
        if current and not secret:
            prompt += f" [{current}]"
        prompt += ": "
        while True:
            raw = getpass(prompt) if secret else input(prompt)
            value = raw.strip() or current
            if value or not required:
                _set(name, value)
                return value
            print("This value is required.")

    def _prompt_date(name: str, label: str) -> str:
        while True:
            value = _prompt(name, label)
            try:
                date.fromisoformat(value)
                return value
            except ValueError:
                print("Please use the YYYY-MM-DD format.")
                _set(name, "")

    print("Job Setup Wizard")
    print("Press Enter to accept defaults shown in brackets.\n")
    _prompt("NAME", "Job name", required=False)
    _prompt("EMAIL", "AIS login email")
    _prompt("PASSWORD", "AIS login password", secret=True)
    _prompt("SCHEDULE_ID", "Schedule id (the number in /niv/schedule/<id>/appointment)")
    _prompt("COUNTRY", "Country/locale segment", fallback=DEFAULT_COUNTRY)
    _prompt("FACILITY_IDS", "Facility ids, comma separated (example: 94,95)")
    start = _prompt_date("START_DATE", "Earliest acceptable date (YYYY-MM-DD)")
    while True:
        end = _prompt_date("END_DATE", "Latest acceptable date (YYYY-MM-DD)")
        if end >= start:
            break
        print("END_DATE must be on or after START_DATE.")
        _set("END_DATE", "")
    _prompt("CHECK_INTERVAL_SECONDS", "Seconds between checks", fallback=str(DEFAULT_CHECK_INTERVAL_SECONDS))
    _prompt(
        "INTERVAL_SCHEDULE",
        "Optional interval schedule as seconds:minutes pairs (example: 10:5,60:55)",
        required=False,
    )
    _prompt("AUTO_BOOK", "Auto-book when a matching date appears? (True/False)", fallback="True")

    with open(job_path, "w", encoding="utf-8") as handle:
        parser.write(handle)
    print(f"\nSaved job definition to {job_path}")
    print(f"Import it with: visa-scheduler import-job {job_path}")
