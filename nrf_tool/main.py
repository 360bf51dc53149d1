from __future__ import annotations
import json
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

import typer
from rich import print

from .config import LOG_FILE, APP_NAME, VENDOR_NORDIC, SIM_STORE
from .usb_transport.channel import (
    UsbChannel, TransportError, DeviceNotFound, ClaimFailed, list_devices, detect_product,
)
from .firmware.map import SessionConfig, DeviceVariant
from .firmware.ihex import HexError
from .firmware.planner import PolicyError
from .firmware.programmer import ProgrammerError, RecordStreamProgrammer, make_programmer
from .firmware.simulate import SimNRF24LU1, SimNRFgo
from .firmware.io import (
    device_info, dump_firmware, flash_firmware, plan_firmware, load_firmware, compare_firmware,
)

VARIANTS = "auto | nrf24lu1 | nrfgo"


def _help_and_exit(ctx: typer.Context, value: bool):
    if value:
        typer.echo(ctx.get_help())
        raise typer.Exit(code=1)


app = typer.Typer(
    add_completion=False,
    help=f"{APP_NAME}: дамп и прошивка nRF24LU1+ / nRFgo по USB (Intel HEX).",
    context_settings={"help_option_names": ["--help"]},
)


def _log_event(kind: str, payload: dict):
    LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
    record = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "kind": kind,
        "payload": payload,
    }
    with open(LOG_FILE, "a", encoding="utf-8") as f:
        f.write(json.dumps(record, ensure_ascii=False) + "\n")


def _resolve_variant(variant: str, demo: bool) -> DeviceVariant:
    if variant != "auto":
        return DeviceVariant.from_label(variant)
    if demo:
        return DeviceVariant.NRF24LU1
    pid = detect_product(VENDOR_NORDIC)
    if pid is None:
        raise DeviceNotFound(f"no nRF24LU1+/nRFgo device ({VENDOR_NORDIC:04X}:*) attached")
    return next(v for v in DeviceVariant if v.product_id == pid)


@contextmanager
def _connect(variant: DeviceVariant, demo: bool):
    """Канал к устройству (или к симулятору в демо-режиме); освобождается всегда."""
    if demo:
        yield SimNRFgo(SIM_STORE) if variant is DeviceVariant.NRFGO else SimNRF24LU1(SIM_STORE)
        return
    with UsbChannel.open(VENDOR_NORDIC, variant.product_id, variant.ep_out, variant.ep_in) as ch:
        yield ch


@contextmanager
def _operation(kind: str):
    """Единая обработка ошибок: сообщение, запись в лог, код выхода."""
    try:
        yield
    except (DeviceNotFound, ClaimFailed) as e:
        print(f"[red]Не удалось открыть устройство:[/] {e}")
        _log_event(f"{kind}_error", {"error": str(e)})
        raise typer.Exit(code=2)
    except ValueError as e:
        if not isinstance(e, (HexError, PolicyError)):
            print(f"[red]Некорректный параметр:[/] {e}")
            raise typer.Exit(code=2)
        print(f"[red]Файл отклонён, в устройство ничего не записано:[/] {e}")
        _log_event(f"{kind}_error", {"error": str(e), "type": type(e).__name__})
        raise typer.Exit(code=3)
    except NotImplementedError as e:
        print(f"[red]{e}[/]")
        raise typer.Exit(code=3)
    except (TransportError, ProgrammerError, OSError) as e:
        print(f"[red]Ошибка ({kind}):[/] {e}")
        _log_event(f"{kind}_error", {"error": str(e), "type": type(e).__name__})
        raise typer.Exit(code=3)


def _report_write(result: dict):
    if "pages" in result:
        if result["pages"]:
            print(f"[green]Готово:[/] перезаписано страниц: {len(result['pages'])} "
                  f"{result['pages']}, сверено блоков: {result['verified']}")
        else:
            print("[green]Образ уже совпадает с устройством, запись не требуется.[/]")
    else:
        print(f"[green]Готово:[/] записано {result['records']} записей ({result['bytes']} байт)")
        if result.get("ready_timeouts"):
            print(f"[yellow]Внимание:[/] устройство {result['ready_timeouts']} раз(а) "
                  f"не ответило READY за отведённое число опросов.")


# -------- Старый интерфейс: -r / -w / -x ----------

@app.callback(invoke_without_command=True)
def root(
    ctx: typer.Context,
    _help: bool = typer.Option(False, "-h", is_eager=True, expose_value=False,
                               callback=_help_and_exit, help="Справка (код выхода 1)"),
    read: Path = typer.Option(None, "-r", help="Считать устройство в HEX-файл"),
    write: Path = typer.Option(None, "-w", help="Записать HEX-файл в устройство"),
    unprotect: bool = typer.Option(False, "-x", help="Снять защиту загрузчика (0x7800..0x7FFF)"),
    variant: str = typer.Option("auto", help=VARIANTS),
    demo: bool = typer.Option(False, help="Симулятор вместо реального устройства"),
    strict_ready: bool = typer.Option(False, help="nRFgo: таймаут READY - ошибка"),
):
    if ctx.invoked_subcommand is not None:
        return
    with _operation("legacy"):
        records = load_firmware(write) if write else None
        dev = _resolve_variant(variant, demo)
        config = SessionConfig(protect_bootloader=not unprotect, variant=dev,
                               strict_ready=strict_ready)
        with _connect(dev, demo) as channel:
            prog = make_programmer(channel, config)
            print(f"[*] {config.geometry.name} version {prog.version()}")
            if read:
                print(f"[*] Dumping device to {read}")
                result = dump_firmware(prog, read)
                _log_event("read_fw", result)
            if write:
                print(f"[*] Programming device from {write}")
                result = flash_firmware(prog, records, str(write))
                _log_event("write_fw", result)
                _report_write(result)


# -------- Команды ----------

@app.command()
def devices():
    """Показать подключённые USB-устройства Nordic."""
    found = list_devices(VENDOR_NORDIC)
    if not found:
        print("[yellow]Устройства не найдены.[/]")
        return
    for d in found:
        kind = next((v.label for v in DeviceVariant if v.product_id == d["pid"]), "?")
        print(f"[cyan]{d['vid']:04X}:{d['pid']:04X}[/] bus {d['bus']} addr {d['address']} - {kind}")


@app.command()
def info(
    variant: str = typer.Option("auto", help=VARIANTS),
    demo: bool = typer.Option(False, help="Симулятор вместо реального устройства"),
):
    """Версия загрузчика и геометрия флеш-памяти."""
    with _operation("info"):
        dev = _resolve_variant(variant, demo)
        config = SessionConfig(variant=dev)
        with _connect(dev, demo) as channel:
            result = device_info(make_programmer(channel, config), config)
    print("[bold]Устройство:[/]")
    print(json.dumps(result, ensure_ascii=False, indent=2))


@app.command("read-fw")
def read_fw(
    out_file: Path = typer.Argument(Path("logs/dump.hex"), help="Куда сохранить дамп"),
    binary: bool = typer.Option(False, "--bin", help="Сырой .bin (32 КБ) вместо Intel HEX"),
    variant: str = typer.Option("auto", help=VARIANTS),
    demo: bool = typer.Option(False, help="Симулятор вместо реального устройства"),
):
    """
    Считать всю флеш-память. Записи из одних 0xFF в HEX не попадают.
    """
    with _operation("read_fw"):
        dev = _resolve_variant(variant, demo)
        config = SessionConfig(variant=dev)
        with _connect(dev, demo) as channel:
            result = dump_firmware(make_programmer(channel, config), out_file, binary=binary)
    _log_event("read_fw", result)
    print(f"[green]Готово:[/] сохранено {result['bytes']} байт -> {result['out']} (crc32 {result['crc32']})")


@app.command("write-fw")
def write_fw(
    in_file: Path = typer.Argument(..., help="Intel HEX для записи"),
    unprotect: bool = typer.Option(False, "-x", "--unprotect",
                                   help="Разрешить запись в область загрузчика"),
    dry_run: bool = typer.Option(False, help="Только показать, какие страницы изменятся"),
    strict_ready: bool = typer.Option(False, help="nRFgo: таймаут READY - ошибка"),
    variant: str = typer.Option("auto", help=VARIANTS),
    demo: bool = typer.Option(False, help="Симулятор вместо реального устройства"),
):
    """
    Записать HEX. nRF24LU1+: перезаписываются только изменённые страницы,
    затем сверка. nRFgo: полное стирание и запись всех записей.
    """
    if not in_file.exists():
        print(f"[red]Файл не найден:[/] {in_file}")
        raise typer.Exit(code=2)

    with _operation("write_fw"):
        records = load_firmware(in_file)
        dev = _resolve_variant(variant, demo)
        config = SessionConfig(protect_bootloader=not unprotect, variant=dev,
                               strict_ready=strict_ready)
        with _connect(dev, demo) as channel:
            prog = make_programmer(channel, config)
            if dry_run:
                result = plan_firmware(prog, records, str(in_file))
            else:
                result = flash_firmware(prog, records, str(in_file))

    if dry_run:
        _log_event("plan_fw", result)
        print(f"[cyan]Будут перезаписаны страницы:[/] {result['pages'] or 'нет'}")
        return
    _log_event("write_fw", result)
    _report_write(result)


@app.command("verify-fw")
def verify_fw(
    in_file: Path = typer.Argument(..., help="Intel HEX для сравнения (например, дамп read-fw)"),
    variant: str = typer.Option("auto", help=VARIANTS),
    demo: bool = typer.Option(False, help="Симулятор вместо реального устройства"),
):
    """
    Сверить флеш-память с HEX-файлом. Чего нет в файле, должно быть стёрто (0xFF).
    Только nRF24LU1+: у nRFgo нет команды чтения.
    """
    if not in_file.exists():
        print(f"[red]Файл не найден:[/] {in_file}")
        raise typer.Exit(code=2)

    with _operation("verify_fw"):
        records = load_firmware(in_file)
        dev = _resolve_variant(variant, demo)
        config = SessionConfig(variant=dev)
        with _connect(dev, demo) as channel:
            result = compare_firmware(make_programmer(channel, config), records, config, str(in_file))

    _log_event("verify_fw", result)
    if result["match"]:
        print(f"[green]Совпадает:[/] {in_file} (crc32 {result['crc32']})")
        return
    print(f"[red]Отличается блоков: {len(result['blocks'])}[/] {result['blocks'][:16]}")
    raise typer.Exit(code=3)


@app.command()
def led(
    number: int = typer.Argument(..., help="Цифра на индикаторе 0..9"),
    demo: bool = typer.Option(False, help="Симулятор вместо реального устройства"),
):
    """nRFgo: вывести цифру на индикатор платы."""
    with _operation("led"):
        config = SessionConfig(variant=DeviceVariant.NRFGO)
        with _connect(config.variant, demo) as channel:
            shown = RecordStreamProgrammer(channel, config).set_led(number)
    print(f"[green]На индикаторе:[/] {shown}")


if __name__ == "__main__":
    app()
