CAUSE_STATES = ["active", "completed", "archived"]

CATEGORIES = [
    ("education", "Education"),
    ("healthcare", "Healthcare"),
    ("environment", "Environment"),
    ("disaster-relief", "Disaster Relief"),
    ("poverty", "Poverty"),
    ("animal-welfare", "Animal Welfare"),
    ("other", "Other"),
]

# archive toggle: src -> dst
ARCHIVE_TOGGLE = {
    "active": "archived",
    "archived": "active",
    "completed": "archived",
}

# only the expiry sweep moves a cause to "completed"
SWEEP_TRANSITION = ("active", "completed")


def archive_target(src: str) -> str:
    return ARCHIVE_TOGGLE.get(src, "archived")
