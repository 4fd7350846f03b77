"""
Complete system walkthrough demonstrating the full monitoring pipeline.

This script exercises:
1. Configuration loading and validation
2. Bed provisioning and the background refresh loop
3. Clearance gates and the promotion rule
4. Activity logging of sensitive actions
5. Error handling for bad input and unknown beds

Run with: uv run python demo_system.py
"""

import asyncio
import tempfile

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from core.config import AppConfig, get_config, print_config_summary, validate_config
from core.domain.clearance import ClearanceLevel
from core.domain.models import CallerIdentity, Provenance
from core.observability import configure_logging
from core.services.authorization import REQUIRED_CLEARANCE, AuthorizationGate
from core.services.monitoring_service import MonitoringService
from core.services.user_directory import InMemoryUserDirectory, UserRecord

console = Console()

CALLERS = {
    level: CallerIdentity(user_id=100 + n, clearance_level=level)
    for n, level in enumerate(ClearanceLevel, start=1)
}
ORIGIN = Provenance(ip_address="127.0.0.1", user_agent="demo_system")


def build_demo_config(data_dir: str) -> AppConfig:
    """Loaded configuration pointed at a scratch directory and an in-memory activity store."""
    config = get_config()
    return config.model_copy(
        update={
            "monitoring": config.monitoring.model_copy(
                update={"data_dir": data_dir, "refresh_interval_seconds": 0.5}
            ),
            "audit": config.audit.model_copy(update={"store": "memory"}),
        }
    )


def build_service(data_dir: str) -> MonitoringService:
    users = InMemoryUserDirectory(
        [
            UserRecord(user_id=201, staff_id="N-201", name="Alex Rivera", clearance_level="L1"),
            UserRecord(user_id=202, staff_id="D-202", name="Sam Okafor", clearance_level="L2"),
        ]
    )
    return MonitoringService(build_demo_config(data_dir), user_directory=users)


async def demo_configuration() -> bool:
    """Load and validate configuration."""

    console.print(Panel("🔧 Configuration", style="blue"))

    try:
        validate_config()
        print_config_summary()
        return True

    except Exception as e:
        console.print(f"❌ Configuration check failed: {e}", style="red")
        return False


async def demo_bed_monitoring(service: MonitoringService) -> bool:
    """Show cached vitals for every seeded bed after a few refresh ticks."""

    console.print(Panel("🛏️ Bed Monitoring", style="blue"))

    try:
        await asyncio.sleep(service.config.monitoring.refresh_interval_seconds * 2)

        monitors_result = await service.list_monitors(CALLERS[ClearanceLevel.L2])
        if monitors_result.is_err():
            raise monitors_result.unwrap_err()

        table = Table(title="Current Vitals")
        table.add_column("Bed", style="cyan")
        table.add_column("Patient", style="magenta")
        table.add_column("Status", style="white")
        table.add_column("HR", style="green")
        table.add_column("ABP", style="green")
        table.add_column("SpO2", style="green")
        table.add_column("RESP", style="green")

        for monitor in monitors_result.unwrap():
            vitals = monitor.current_vitals
            table.add_row(
                monitor.bed_id,
                monitor.patient_name,
                "active" if monitor.is_active else "inactive",
                str(vitals.heart_rate) if vitals else "-",
                f"{vitals.systolic_pressure}/{vitals.diastolic_pressure}" if vitals else "-",
                str(vitals.oxygen_saturation) if vitals else "-",
                str(vitals.respiration_rate) if vitals else "-",
            )

        console.print(table)

        history = await service.get_history(CALLERS[ClearanceLevel.L2], "BED001", hours=1)
        if history.is_ok():
            console.print(f"📈 BED001 has {len(history.unwrap())} samples in the last hour")
        return True

    except Exception as e:
        console.print(f"❌ Bed monitoring failed: {e}", style="red")
        return False


async def demo_bed_management(service: MonitoringService) -> bool:
    """Add, update, deactivate and remove a bed."""

    console.print(Panel("🧰 Bed Management", style="blue"))

    try:
        supervisor = CALLERS[ClearanceLevel.L3]
        nurse = CALLERS[ClearanceLevel.L2]

        add = service.add_bed
        steps = [
            ("add BED900", await add(supervisor, "BED900", "P900", "Demo Patient", ORIGIN)),
            ("add BED900 again", await add(supervisor, "BED900", "P900", "Demo Patient")),
            ("nurse adds BED901", await add(nurse, "BED901", "P901", "Other Patient")),
            (
                "update BED900",
                await service.update_patient_info(nurse, "BED900", "P901", "Renamed"),
            ),
            ("deactivate BED900", await service.set_bed_status(nurse, "BED900", False, ORIGIN)),
            ("remove BED900", await service.remove_bed(supervisor, "BED900", ORIGIN)),
            ("remove BED900 again", await service.remove_bed(supervisor, "BED900")),
        ]

        table = Table(title="Bed Operations")
        table.add_column("Step", style="cyan")
        table.add_column("Outcome", style="white")
        for step, result in steps:
            outcome = "✅ ok" if result.is_ok() else f"⛔ {result.unwrap_err().code}"
            table.add_row(step, outcome)

        console.print(table)
        return True

    except Exception as e:
        console.print(f"❌ Bed management failed: {e}", style="red")
        return False


async def demo_authorization(service: MonitoringService) -> bool:
    """Print the access table and exercise the promotion rule."""

    console.print(Panel("🔐 Authorization", style="blue"))

    try:
        gate = AuthorizationGate()
        table = Table(title="Access Matrix")
        table.add_column("Operation", style="cyan")
        for level in ClearanceLevel:
            table.add_column(level.value, style="white")

        for operation in REQUIRED_CLEARANCE:
            row = [operation.value]
            for level in ClearanceLevel:
                allowed = gate.authorize(CALLERS[level], operation).is_ok()
                row.append("✅" if allowed else "·")
            table.add_row(*row)

        console.print(table)

        promotions = Table(title="Clearance Changes")
        promotions.add_column("Caller", style="cyan")
        promotions.add_column("Target", style="magenta")
        promotions.add_column("New Level", style="yellow")
        promotions.add_column("Outcome", style="white")

        attempts = [
            (ClearanceLevel.L3, 201, "L2"),
            (ClearanceLevel.L3, 202, "L3"),
            (ClearanceLevel.L4, 202, "L4"),
            (ClearanceLevel.L2, 201, "L1"),
            (ClearanceLevel.L4, 999, "L1"),
        ]
        for caller_level, target, new_level in attempts:
            result = await service.change_clearance(
                CALLERS[caller_level], target, new_level, ORIGIN
            )
            outcome = "✅ ok" if result.is_ok() else f"⛔ {result.unwrap_err().code}"
            promotions.add_row(caller_level.value, str(target), new_level, outcome)

        console.print(promotions)
        return True

    except Exception as e:
        console.print(f"❌ Authorization demo failed: {e}", style="red")
        return False


async def demo_activity_log(service: MonitoringService) -> bool:
    """Show the audit trail produced by the previous steps."""

    console.print(Panel("📜 Activity Log", style="blue"))

    try:
        events_result = await service.audit_activity(CALLERS[ClearanceLevel.L4], limit=20)
        if events_result.is_err():
            raise events_result.unwrap_err()

        table = Table(title="Audit Trail (newest first)")
        table.add_column("When", style="cyan")
        table.add_column("Actor", style="magenta")
        table.add_column("Category", style="yellow")
        table.add_column("Severity", style="red")
        table.add_column("Description", style="white")

        for event in events_result.unwrap():
            table.add_row(
                event.created_at.strftime("%H:%M:%S"),
                str(event.actor_user_id),
                event.category.value,
                event.severity.value,
                event.description,
            )

        console.print(table)

        denied = await service.audit_activity(CALLERS[ClearanceLevel.L3])
        console.print(f"L3 reading the audit log: {denied.unwrap_err().message}", style="yellow")
        return True

    except Exception as e:
        console.print(f"❌ Activity log demo failed: {e}", style="red")
        return False


async def demo_error_handling(service: MonitoringService) -> bool:
    """Bad input and unknown beds map to distinct error kinds."""

    console.print(Panel("🛡️ Error Handling", style="blue"))

    try:
        nurse = CALLERS[ClearanceLevel.L2]
        cases = [
            ("anonymous read", await service.list_monitors(None)),
            ("unknown bed", await service.get_monitor(nurse, "BED404")),
            (
                "non-boolean status",
                await service.set_bed_status(nurse, "BED001", "yes"),  # type: ignore[arg-type]
            ),
            ("negative history window", await service.get_history(nurse, "BED001", hours=-1)),
            ("unsafe bed id", await service.add_bed(CALLERS[ClearanceLevel.L3], "../x", "P", "N")),
        ]

        table = Table(title="Error Kinds")
        table.add_column("Case", style="cyan")
        table.add_column("Code", style="yellow")
        table.add_column("Message", style="white")
        for case, result in cases:
            error = result.unwrap_err()
            table.add_row(case, error.code, error.message)

        console.print(table)
        return True

    except Exception as e:
        console.print(f"❌ Error handling demo failed: {e}", style="red")
        return False


async def run_all_demos() -> None:
    """Run every walkthrough step against one service instance."""

    console.print(Panel("🩺 Bedside Vitals Monitor - System Walkthrough", style="bold blue"))

    results = [("Configuration", await demo_configuration())]

    with tempfile.TemporaryDirectory(prefix="monitor-demo-") as data_dir:
        service = build_service(data_dir)
        steps = [
            ("Bed Monitoring", demo_bed_monitoring),
            ("Bed Management", demo_bed_management),
            ("Authorization", demo_authorization),
            ("Activity Log", demo_activity_log),
            ("Error Handling", demo_error_handling),
        ]

        async with service.session():
            for step_name, step in steps:
                console.print(f"\n{'=' * 60}")
                try:
                    results.append((step_name, await step(service)))
                except KeyboardInterrupt:
                    console.print("\n⏹️  Walkthrough interrupted by user", style="yellow")
                    break

    # Summary
    console.print(f"\n{'=' * 60}")
    console.print(Panel("📋 Walkthrough Summary", style="bold"))

    summary_table = Table()
    summary_table.add_column("Step", style="cyan")
    summary_table.add_column("Result", style="white")

    passed = 0
    for step_name, result in results:
        if result:
            summary_table.add_row(step_name, "✅ PASSED")
            passed += 1
        else:
            summary_table.add_row(step_name, "❌ FAILED")

    console.print(summary_table)
    console.print(f"\n🎯 Results: {passed}/{len(results)} steps passed")


if __name__ == "__main__":
    configure_logging(get_config().logging)
    asyncio.run(run_all_demos())
