import pathlib

from agrifund.pyteal_compiled import get_approval_teal, get_clear_teal

out = pathlib.Path("contracts/artifacts")
out.mkdir(parents=True, exist_ok=True)

(out / "approval.teal").write_text(get_approval_teal())
(out / "clear.teal").write_text(get_clear_teal())

print("Wrote:", (out / "approval.teal"), (out / "clear.teal"))
