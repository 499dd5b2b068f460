from __future__ import annotations

import argparse
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

import tkinter as tk
from tkinter import filedialog, messagebox, ttk
from tkinter import font as tkfont
from urllib.parse import unquote, urlparse

from PIL import Image, ImageTk

from .core import Calibration, Hyperstack, load_hyperstack, render_rgb, save_hyperstack
from .export import (
    LOCATIONS,
    OptionalFeatureError,
    ScaleBarOptions,
    TimeBarOptions,
    add_scale_bar,
    add_time_bar,
    scale_and_export,
)
from .workflow import (
    MontageError,
    NoImageError,
    Selection,
    Session,
    WorkflowSettings,
    align_selected,
    alignment_labels,
    create_merge,
    extract_channels,
)

try:
    from tkinterdnd2 import DND_FILES, TkinterDnD
    DND_AVAILABLE = True
except ImportError:  # pragma: no cover - depends on optional dependency
    DND_AVAILABLE = False
    DND_FILES = None
    TkinterDnD = None

logger = logging.getLogger(__name__)


def parse_drop_files(data: str) -> List[str]:
    if not data:
        return []
    tokens = re.findall(r"{[^}]+}|\S+", data)
    paths = [normalize_drop_path(token.strip().strip("{}")) for token in tokens]
    return [p for p in paths if p]


def normalize_drop_path(value: str) -> str:
    if value.startswith("file://"):
        parsed = urlparse(value)
        value = unquote(parsed.path)
        if os.name == "nt" and value.startswith("/"):
            value = value[1:]
    return value


def compute_fit_scale(image_size: tuple[int, int], canvas_size: tuple[int, int]) -> float:
    img_w, img_h = image_size
    canvas_w, canvas_h = canvas_size
    if img_w <= 0 or img_h <= 0:
        return 1.0
    if canvas_w <= 0 or canvas_h <= 0:
        return 1.0
    scale = min(canvas_w / img_w, canvas_h / img_h, 1.0)
    return max(scale, 0.05)


def selections_from_labels(labels: Sequence[str]) -> List[Selection]:
    return [Selection.from_label(label) for label in labels]


def parse_positive_float(text: str, name: str) -> float:
    try:
        value = float(str(text).strip())
    except ValueError:
        raise ValueError(f"{name} must be a number.") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive.")
    return value


def calibration_from_fields(fields: Mapping[str, str]) -> Calibration:
    """Build a calibration from the Properties dialog entries."""
    unit = fields.get("unit", "").strip() or "pixel"
    frame_interval = float(fields.get("frame_interval", "0") or 0)
    fps = float(fields.get("fps", "0") or 0)
    if frame_interval < 0 or fps < 0:
        raise ValueError("Frame interval and frame rate cannot be negative.")
    return Calibration(
        pixel_width=parse_positive_float(fields.get("pixel_width", "1"), "Pixel width"),
        pixel_height=parse_positive_float(fields.get("pixel_height", "1"), "Pixel height"),
        unit=unit,
        frame_interval=frame_interval,
        fps=fps,
    )


def describe_stack(stack: Hyperstack) -> str:
    if stack.closed:
        return f"{stack.title} (closed)"
    cal = stack.calibration
    dims = f"{stack.channels}c x {stack.slices}z x {stack.frames}t"
    text = f"{stack.width}x{stack.height} px, {stack.bit_depth}-bit, {dims}"
    if cal.scaled:
        text += f", {cal.pixel_width:g} {cal.unit}/px"
    if stack.frames > 1:
        text += f" | frame {stack.t + 1}/{stack.frames}"
    return text


def bit_depth_range(stack: Hyperstack) -> tuple[float, float]:
    if stack.bit_depth == 16:
        return (0.0, 65535.0)
    return (0.0, 255.0)


class Tooltip:
    def __init__(self, widget: tk.Widget, text: str) -> None:
        self.widget = widget
        self.text = text
        self.tip: Optional[tk.Toplevel] = None
        widget.bind("<Enter>", self._show)
        widget.bind("<Leave>", self._hide)

    def _show(self, _: tk.Event) -> None:
        if self.tip or not self.text:
            return
        x = self.widget.winfo_rootx() + 16
        y = self.widget.winfo_rooty() + 18
        self.tip = tk.Toplevel(self.widget)
        self.tip.wm_overrideredirect(True)
        self.tip.wm_geometry(f"+{x}+{y}")
        label = ttk.Label(self.tip, text=self.text, style="Tooltip.TLabel", justify="left")
        label.pack(ipadx=6, ipady=4)

    def _hide(self, _: tk.Event) -> None:
        if self.tip:
            self.tip.destroy()
            self.tip = None


@dataclass
class UiTokens:
    pad_sm: int = 6
    pad_md: int = 12
    pad_lg: int = 18
    panel_width: int = 380
    viewer_max_w: int = 720
    viewer_max_h: int = 560


@dataclass
class UiColors:
    bg: str = "#F4F1EC"
    panel: str = "#FBF9F5"
    text: str = "#1E1914"
    muted: str = "#6F665F"
    accent: str = "#C06A33"
    accent_dark: str = "#A15426"
    border: str = "#D7CFC6"
    canvas_bg: str = "#14110D"
    highlight: str = "#F2E6D8"


class ImageWindow(tk.Toplevel):
    """Viewer for one shown image; closing the window closes the image."""

    def __init__(self, app: "ChannelMontageApp", stack: Hyperstack) -> None:
        super().__init__(app.master)
        self.app = app
        self.stack = stack
        self._photo: Optional[ImageTk.PhotoImage] = None
        self.title(stack.title)
        self.configure(background=app.colors.bg)

        canvas_w = min(stack.width, app.tokens.viewer_max_w)
        canvas_h = min(stack.height, app.tokens.viewer_max_h)
        self.canvas = tk.Canvas(
            self,
            width=canvas_w,
            height=canvas_h,
            background=app.colors.canvas_bg,
            highlightthickness=0,
        )
        self.canvas.pack(fill="both", expand=True)

        self.info_var = tk.StringVar(value=describe_stack(stack))
        if stack.slices > 1:
            self._add_position_slider("Z", stack.slices, stack.z, self._on_slice)
        if stack.frames > 1:
            self._add_position_slider("T", stack.frames, stack.t, self._on_frame)

        footer = ttk.Frame(self, style="Montage.TFrame")
        footer.pack(fill="x", padx=app.tokens.pad_sm, pady=app.tokens.pad_sm)
        ttk.Label(footer, textvariable=self.info_var, style="Muted.TLabel").pack(side="left")
        ttk.Button(footer, text="Save TIFF", command=self._save, style="Secondary.TButton").pack(side="right")

        self.protocol("WM_DELETE_WINDOW", self._on_close_request)
        self.bind("<FocusIn>", lambda _: app.set_active(self.stack))
        self.canvas.bind("<Configure>", lambda _: self.refresh())
        self.refresh()

    def _add_position_slider(self, label: str, count: int, current: int, command) -> None:
        row = ttk.Frame(self, style="Montage.TFrame")
        row.pack(fill="x", padx=self.app.tokens.pad_sm)
        ttk.Label(row, text=label, style="Montage.TLabel", width=2).pack(side="left")
        slider = ttk.Scale(row, from_=1, to=count, orient="horizontal", command=command)
        slider.set(current + 1)
        slider.pack(side="left", fill="x", expand=True)

    def _on_frame(self, value: str) -> None:
        self.stack.set_frame(int(round(float(value))) - 1)
        self.refresh()

    def _on_slice(self, value: str) -> None:
        self.stack.set_slice(int(round(float(value))) - 1)
        self.refresh()

    def refresh(self) -> None:
        if self.stack.closed:
            return
        rendered = render_rgb(self.stack)
        canvas_w = self.canvas.winfo_width()
        canvas_h = self.canvas.winfo_height()
        if canvas_w <= 1 or canvas_h <= 1:
            canvas_w = int(self.canvas["width"])
            canvas_h = int(self.canvas["height"])
        scale = compute_fit_scale(rendered.size, (canvas_w, canvas_h))
        if scale < 0.999:
            new_size = (max(int(rendered.size[0] * scale), 1), max(int(rendered.size[1] * scale), 1))
            rendered = rendered.resize(new_size, resample=Image.BILINEAR)
        self._photo = ImageTk.PhotoImage(rendered)
        self.canvas.delete("all")
        self.canvas.create_image(canvas_w // 2, canvas_h // 2, image=self._photo, anchor="center")
        self.info_var.set(describe_stack(self.stack))

    def _save(self) -> None:
        path = filedialog.asksaveasfilename(
            parent=self,
            title="Save image",
            defaultextension=".tif",
            initialfile=f"{Path(self.stack.title).stem}.tif",
            filetypes=[("TIFF", "*.tif *.tiff"), ("All files", "*.*")],
        )
        if not path:
            return
        try:
            save_hyperstack(self.stack, path)
        except (OSError, ValueError) as exc:
            messagebox.showerror("Save failed", str(exc), parent=self)
            return
        self.app.set_status(f"Saved {os.path.basename(path)}")

    def _on_close_request(self) -> None:
        self.app.session.close(self.stack)


class DisplayRangeDialog(tk.Toplevel):
    """Brightness/contrast: display min/max of the active image."""

    def __init__(self, app: "ChannelMontageApp", stack: Hyperstack) -> None:
        super().__init__(app.master)
        self.app = app
        self.stack = stack
        self.title(f"B&C - {stack.title}")
        self.configure(background=app.colors.panel)
        self.resizable(False, False)

        low, high = bit_depth_range(stack)
        current = stack.display_range or (low, high)
        self.min_var = tk.DoubleVar(value=current[0])
        self.max_var = tk.DoubleVar(value=current[1])
        self.min_label_var = tk.StringVar()
        self.max_label_var = tk.StringVar()

        frame = ttk.Frame(self, style="Panel.TFrame")
        frame.pack(fill="both", expand=True, padx=app.tokens.pad_md, pady=app.tokens.pad_md)
        self._slider(frame, "Display min", self.min_var, self.min_label_var, low, high - 1)
        self._slider(frame, "Display max", self.max_var, self.max_label_var, low + 1, high)
        buttons = ttk.Frame(frame, style="Panel.TFrame")
        buttons.pack(fill="x", pady=(app.tokens.pad_sm, 0))
        ttk.Button(buttons, text="Reset", command=self._reset, style="Secondary.TButton").pack(side="left")
        ttk.Button(buttons, text="Close", command=self.destroy, style="Primary.TButton").pack(side="right")
        self._update_labels()

    def _slider(self, parent, label, variable, value_label, slider_from, slider_to) -> None:
        header = ttk.Frame(parent, style="Panel.TFrame")
        header.pack(fill="x")
        ttk.Label(header, text=label, style="Panel.TLabel").pack(side="left")
        ttk.Label(header, textvariable=value_label, style="PanelMuted.TLabel").pack(side="right")
        ttk.Scale(
            parent,
            from_=slider_from,
            to=slider_to,
            orient="horizontal",
            variable=variable,
            length=260,
            command=lambda _=None: self._apply(),
        ).pack(fill="x", pady=(self.app.tokens.pad_sm, self.app.tokens.pad_sm))

    def _apply(self) -> None:
        if self.stack.closed:
            self.destroy()
            return
        min_val = float(self.min_var.get())
        max_val = float(self.max_var.get())
        if max_val <= min_val:
            max_val = min_val + 1
            self.max_var.set(max_val)
        self.stack.display_range = (min_val, max_val)
        self._update_labels()
        self.app.refresh_window(self.stack)

    def _reset(self) -> None:
        self.stack.display_range = None
        low, high = bit_depth_range(self.stack)
        self.min_var.set(low)
        self.max_var.set(high)
        self._update_labels()
        self.app.refresh_window(self.stack)

    def _update_labels(self) -> None:
        self.min_label_var.set(f"{self.min_var.get():.0f}")
        self.max_label_var.set(f"{self.max_var.get():.0f}")


class PropertiesDialog(tk.Toplevel):
    """Edit the calibration of the active image."""

    FIELDS = (
        ("pixel_width", "Pixel width"),
        ("pixel_height", "Pixel height"),
        ("unit", "Unit"),
        ("frame_interval", "Frame interval (s)"),
        ("fps", "Frame rate (fps)"),
    )

    def __init__(self, app: "ChannelMontageApp", stack: Hyperstack) -> None:
        super().__init__(app.master)
        self.app = app
        self.stack = stack
        self.title(f"Properties - {stack.title}")
        self.configure(background=app.colors.panel)
        self.resizable(False, False)

        cal = stack.calibration
        initial = {
            "pixel_width": f"{cal.pixel_width:g}",
            "pixel_height": f"{cal.pixel_height:g}",
            "unit": cal.unit,
            "frame_interval": f"{cal.frame_interval:g}",
            "fps": f"{cal.fps:g}",
        }
        self.vars: Dict[str, tk.StringVar] = {}
        frame = ttk.Frame(self, style="Panel.TFrame")
        frame.pack(fill="both", expand=True, padx=app.tokens.pad_md, pady=app.tokens.pad_md)
        for row, (key, label) in enumerate(self.FIELDS):
            ttk.Label(frame, text=label, style="Panel.TLabel").grid(row=row, column=0, sticky="w", pady=2)
            var = tk.StringVar(value=initial[key])
            ttk.Entry(frame, textvariable=var, style="Montage.TEntry", width=14).grid(
                row=row, column=1, sticky="ew", padx=(app.tokens.pad_sm, 0), pady=2
            )
            self.vars[key] = var
        buttons = ttk.Frame(frame, style="Panel.TFrame")
        buttons.grid(row=len(self.FIELDS), column=0, columnspan=2, sticky="ew", pady=(app.tokens.pad_md, 0))
        ttk.Button(buttons, text="Cancel", command=self.destroy, style="Secondary.TButton").pack(side="left")
        ttk.Button(buttons, text="OK", command=self._apply, style="Primary.TButton").pack(side="right")

    def _apply(self) -> None:
        try:
            calibration = calibration_from_fields({key: var.get() for key, var in self.vars.items()})
        except ValueError as exc:
            messagebox.showerror("Invalid properties", str(exc), parent=self)
            return
        target = self.stack.calibration
        target.pixel_width = calibration.pixel_width
        target.pixel_height = calibration.pixel_height
        target.unit = calibration.unit
        target.frame_interval = calibration.frame_interval
        target.fps = calibration.fps
        self.stack.changes = True
        self.app.refresh_window(self.stack)
        self.destroy()


class ChannelMontageApp(ttk.Frame):
    SUPPORTED_EXTENSIONS = {".tif", ".tiff", ".png", ".jpg", ".jpeg", ".bmp"}

    def __init__(
        self,
        master: tk.Tk,
        paths: Optional[List[str]] = None,
        settings: Optional[WorkflowSettings] = None,
    ) -> None:
        super().__init__(master)
        self.master = master
        self.tokens = UiTokens()
        self.colors = UiColors()
        self.session = Session(settings)
        self.session.on_show = self._on_image_shown
        self.session.on_close = self._on_image_closed
        self.windows: Dict[int, ImageWindow] = {}
        self.active_stack: Optional[Hyperstack] = None
        self.dnd_enabled = False

        settings = self.session.settings
        self.status_var = tk.StringVar(value="No image loaded.")
        self.use_frames_var = tk.BooleanVar(value=False)
        self.merge_vars = [tk.BooleanVar(value=False) for _ in range(settings.max_channels)]
        self.alignment_vars = [tk.StringVar(value="None") for _ in range(settings.alignment_slots)]
        self.scale_bar_width_var = tk.StringVar(value="10")
        self.scale_bar_location_var = tk.StringVar(value=LOCATIONS[0])

        self._build_ui()
        self._configure_drag_drop()

        if paths:
            self.load_images(paths)

    def _build_ui(self) -> None:
        self.master.title("Channel Montage")
        self.master.configure(background=self.colors.bg)

        style = ttk.Style(self.master)
        if "clam" in style.theme_names():
            style.theme_use("clam")
        self._setup_fonts()

        style.configure("Montage.TFrame", background=self.colors.bg)
        style.configure("Panel.TFrame", background=self.colors.panel)
        style.configure("Montage.TLabel", background=self.colors.bg, foreground=self.colors.text, font=self.fonts["body"])
        style.configure("Panel.TLabel", background=self.colors.panel, foreground=self.colors.text, font=self.fonts["body"])
        style.configure(
            "PanelMuted.TLabel",
            background=self.colors.panel,
            foreground=self.colors.muted,
            font=self.fonts["caption"],
        )
        style.configure(
            "Muted.TLabel",
            background=self.colors.bg,
            foreground=self.colors.muted,
            font=self.fonts["caption"],
        )
        style.configure(
            "Montage.TLabelframe",
            background=self.colors.panel,
            foreground=self.colors.text,
            font=self.fonts["section"],
        )
        style.configure(
            "Montage.TLabelframe.Label",
            background=self.colors.panel,
            foreground=self.colors.text,
            font=self.fonts["section"],
        )
        style.configure(
            "Montage.TEntry",
            fieldbackground="#FFFFFF",
            background=self.colors.panel,
            foreground=self.colors.text,
            padding=4,
        )
        style.configure(
            "Montage.TCombobox",
            fieldbackground="#FFFFFF",
            background=self.colors.panel,
            foreground=self.colors.text,
            padding=4,
        )
        style.configure(
            "Primary.TButton",
            background=self.colors.accent,
            foreground="#FFFFFF",
            padding=(12, 6),
            font=self.fonts["button"],
        )
        style.map(
            "Primary.TButton",
            background=[("active", self.colors.accent_dark)],
            foreground=[("active", "#FFFFFF")],
        )
        style.configure(
            "Secondary.TButton",
            background=self.colors.panel,
            foreground=self.colors.text,
            padding=(10, 6),
            font=self.fonts["button"],
        )
        style.configure(
            "Panel.TCheckbutton",
            background=self.colors.panel,
            foreground=self.colors.text,
            font=self.fonts["body"],
        )
        style.configure(
            "Tooltip.TLabel",
            background="#1C1916",
            foreground="#F7F2EB",
            font=self.fonts["caption"],
            relief="solid",
            borderwidth=1,
        )
        style.configure(
            "Help.TLabel",
            background=self.colors.panel,
            foreground=self.colors.muted,
            font=self.fonts["caption"],
        )

        self.pack(fill="both", expand=True)
        self.configure(style="Montage.TFrame")

        header = ttk.Frame(self, style="Montage.TFrame")
        header.pack(fill="x", padx=self.tokens.pad_lg, pady=(self.tokens.pad_lg, self.tokens.pad_md))
        title = ttk.Label(header, text="Channel Montage", style="Montage.TLabel")
        title.configure(font=self.fonts["title"])
        title.pack(side="left")
        ttk.Button(header, text="Open Image", command=self._open_images_dialog, style="Secondary.TButton").pack(
            side="right"
        )

        body = ttk.Frame(self, style="Montage.TFrame", width=self.tokens.panel_width)
        body.pack(fill="both", expand=True, padx=self.tokens.pad_lg)
        self._build_controls(body)

        status = ttk.Label(self, textvariable=self.status_var, style="Muted.TLabel", anchor="w")
        status.pack(fill="x", padx=self.tokens.pad_lg, pady=(self.tokens.pad_sm, self.tokens.pad_lg))

    def _build_controls(self, parent: ttk.Frame) -> None:
        pad = self.tokens.pad_sm

        channels_frame = self._section(parent, "Channels")
        self._button(
            channels_frame,
            "Open Brightness/Contrast",
            self._open_brightness_contrast,
            help_text="Adjust display min/max of the active image.",
        )
        split_row = ttk.Frame(channels_frame, style="Panel.TFrame")
        split_row.pack(fill="x", pady=(0, pad))
        ttk.Button(split_row, text="Dup / Split / Invert", command=self._dup_split_invert, style="Primary.TButton").pack(
            side="left"
        )
        ttk.Checkbutton(
            split_row,
            text="use frames",
            variable=self.use_frames_var,
            style="Panel.TCheckbutton",
        ).pack(side="left", padx=(self.tokens.pad_md, 0))
        self._add_help_icon(
            split_row,
            "Split the current slice into inverted 8-bit channels.\nWith 'use frames', every time frame is kept.",
        )

        merge_frame = self._section(parent, "Select channels to merge")
        checks = ttk.Frame(merge_frame, style="Panel.TFrame")
        checks.pack(fill="x", pady=(0, pad))
        for idx, var in enumerate(self.merge_vars):
            ttk.Checkbutton(checks, text=f"Ch{idx + 1}", variable=var, style="Panel.TCheckbutton").pack(
                side="left", padx=(0, pad)
            )
        self._button(
            merge_frame,
            "Create Merge Only",
            self._create_merge_only,
            help_text="Merge the ticked channels into one RGB composite.",
        )

        align_frame = self._section(parent, "Select channels to align")
        labels = alignment_labels(self.session.settings)
        for idx, var in enumerate(self.alignment_vars):
            row = ttk.Frame(align_frame, style="Panel.TFrame")
            row.pack(fill="x", pady=(0, 2))
            ttk.Label(row, text=f"Image {idx + 1}:", style="Panel.TLabel", width=9).pack(side="left")
            ttk.Combobox(row, textvariable=var, values=labels, state="readonly", style="Montage.TCombobox", width=10).pack(
                side="left"
            )
        self._button(
            align_frame,
            "Align Selected Images",
            self._align_selected,
            help_text="Place the selected channels and the merge side by side, left to right.",
        )

        annotate_frame = self._section(parent, "Annotate")
        bar_row = ttk.Frame(annotate_frame, style="Panel.TFrame")
        bar_row.pack(fill="x", pady=(0, pad))
        ttk.Label(bar_row, text="Width", style="Panel.TLabel").pack(side="left")
        ttk.Entry(bar_row, textvariable=self.scale_bar_width_var, width=6, style="Montage.TEntry").pack(
            side="left", padx=(pad, pad)
        )
        ttk.Combobox(
            bar_row,
            textvariable=self.scale_bar_location_var,
            values=list(LOCATIONS),
            state="readonly",
            style="Montage.TCombobox",
            width=11,
        ).pack(side="left")
        self._button(
            annotate_frame,
            "Add Scale Bar",
            self._add_scale_bar,
            help_text="Width is in calibrated units of the active image.",
        )

        movie_frame = self._section(parent, "Movie Export Tools")
        self._button(movie_frame, "Properties", self._open_properties, help_text="Edit pixel size and frame timing.")
        self._button(movie_frame, "Add Time Bar", self._add_time_bar, help_text="Progress bar and elapsed time per frame.")
        self._button(
            movie_frame,
            f"Scale and Export ({self.session.settings.export_scale}x + AVI)",
            self._scale_and_export,
            help_text="Bicubic upscale, then write an AVI (needs OpenCV).",
        )

        ttk.Button(parent, text="Close generated images", command=self._close_generated, style="Secondary.TButton").pack(
            fill="x", pady=(self.tokens.pad_sm, 0)
        )

    def _section(self, parent: ttk.Frame, text: str) -> ttk.LabelFrame:
        frame = ttk.LabelFrame(parent, text=text, style="Montage.TLabelframe", padding=self.tokens.pad_sm)
        frame.pack(fill="x", pady=(0, self.tokens.pad_md))
        return frame

    def _button(self, parent: ttk.Frame, text: str, command, help_text: Optional[str] = None) -> ttk.Button:
        row = ttk.Frame(parent, style="Panel.TFrame")
        row.pack(fill="x", pady=(0, self.tokens.pad_sm))
        button = ttk.Button(row, text=text, command=command, style="Secondary.TButton")
        button.pack(side="left")
        if help_text:
            self._add_help_icon(row, help_text)
        return button

    def _setup_fonts(self) -> None:
        base_family = self._pick_font_family(
            [
                "Avenir Next",
                "Segoe UI",
                "Helvetica Neue",
                "Noto Sans",
                "DejaVu Sans",
                "Arial",
            ]
        )
        self.fonts = {
            "title": tkfont.Font(family=base_family, size=18, weight="bold"),
            "section": tkfont.Font(family=base_family, size=12, weight="bold"),
            "body": tkfont.Font(family=base_family, size=11),
            "caption": tkfont.Font(family=base_family, size=10),
            "button": tkfont.Font(family=base_family, size=11, weight="bold"),
        }
        self.master.option_add("*Font", self.fonts["body"])

    def _pick_font_family(self, preferred: List[str]) -> str:
        available = set(tkfont.families(self.master))
        for name in preferred:
            if name in available:
                return name
        return tkfont.nametofont("TkDefaultFont").actual("family")

    def _add_help_icon(self, parent: ttk.Frame, text: str) -> None:
        icon = ttk.Label(parent, text="?", style="Help.TLabel", cursor="question_arrow")
        icon.pack(side="left", padx=(6, 0))
        Tooltip(icon, text)

    def _configure_drag_drop(self) -> None:
        if not DND_AVAILABLE:
            self.dnd_enabled = False
            return
        self.dnd_enabled = True
        self._register_drop_targets(self.master)
        if not self.dnd_enabled:
            self.set_status("Drag & drop disabled. Use Open Image.")

    def _on_drop(self, event: tk.Event) -> str:
        paths = parse_drop_files(str(getattr(event, "data", "")))
        paths = [p for p in paths if os.path.exists(p) and os.path.isfile(p)]
        image_paths = [p for p in paths if self._is_supported_image(p)]

        if not image_paths:
            messagebox.showerror(
                "Unsupported files",
                "Drop image files (tif, tiff, png, jpg, jpeg, bmp).",
            )
            return "break"

        self.load_images(image_paths)
        return "break"

    def _is_supported_image(self, path: str) -> bool:
        return Path(path).suffix.lower() in self.SUPPORTED_EXTENSIONS

    def _register_drop_targets(self, widget: tk.Widget) -> None:
        if hasattr(widget, "drop_target_register"):
            try:
                widget.drop_target_register(DND_FILES)
                widget.dnd_bind("<<Drop>>", self._on_drop)
            except tk.TclError:
                self.dnd_enabled = False
        for child in widget.winfo_children():
            self._register_drop_targets(child)

    def _open_images_dialog(self) -> None:
        paths = filedialog.askopenfilenames(
            title="Open image (one multi-page TIFF or one file per channel)",
            filetypes=[
                ("Image files", "*.tif *.tiff *.png *.jpg *.jpeg *.bmp"),
                ("All files", "*.*"),
            ],
        )
        if paths:
            self.load_images(list(paths))

    def load_images(self, paths: List[str]) -> None:
        try:
            stack = load_hyperstack(paths)
        except Exception as exc:
            logger.debug("Failed to load %s", paths, exc_info=True)
            messagebox.showerror("Load failed", str(exc))
            return
        self.session.open_image(stack)
        self.set_status(f"Opened {stack.title}: {describe_stack(stack)}")

    def set_active(self, stack: Hyperstack) -> None:
        if not stack.closed:
            self.active_stack = stack

    def refresh_window(self, stack: Hyperstack) -> None:
        window = self.windows.get(id(stack))
        if window is not None:
            window.refresh()

    def set_status(self, message: str) -> None:
        self.status_var.set(message)

    def _on_image_shown(self, stack: Hyperstack) -> None:
        window = self.windows.get(id(stack))
        if window is None:
            window = ImageWindow(self, stack)
            self.windows[id(stack)] = window
        else:
            window.deiconify()
            window.lift()
            window.refresh()
        self.set_active(stack)

    def _on_image_closed(self, stack: Hyperstack) -> None:
        window = self.windows.pop(id(stack), None)
        if window is not None:
            window.destroy()
        if self.active_stack is stack:
            self.active_stack = self.session.original

    def _active_image(self) -> Optional[Hyperstack]:
        for candidate in (self.active_stack, self.session.original):
            if candidate is not None and not candidate.closed:
                return candidate
        messagebox.showerror("Error", "No image is open!")
        return None

    def _sync_session_state(self) -> None:
        self.session.use_frames = bool(self.use_frames_var.get())
        self.session.merge_flags = [bool(var.get()) for var in self.merge_vars]

    def _open_brightness_contrast(self) -> None:
        stack = self._active_image()
        if stack is None:
            return
        if stack.bit_depth == 24:
            messagebox.showinfo("Brightness/Contrast", "RGB images have no adjustable display range.")
            return
        DisplayRangeDialog(self, stack)

    def _dup_split_invert(self) -> None:
        self._sync_session_state()
        source = self.active_stack if self.active_stack is not None and not self.active_stack.closed else None
        try:
            channel_set = extract_channels(self.session, source)
        except NoImageError as exc:
            messagebox.showerror("Error", str(exc))
            return
        count = len(channel_set.populated())
        self.set_status(f"Extracted {count} inverted channel(s) from {self.session.original.title}.")

    def _create_merge_only(self) -> None:
        self._sync_session_state()
        if self.session.original is None:
            messagebox.showerror("Error", "Original image not available.")
            return
        if not any(self.session.merge_flags):
            messagebox.showerror("Merge", "Select at least one channel to merge.")
            return
        merged = create_merge(self.session, show=True)
        if merged is None:
            messagebox.showerror("Merge", "No merged image was created. Check that the selected channels exist.")
            return
        self.set_status(f"Created {merged.title}.")

    def _align_selected(self) -> None:
        self._sync_session_state()
        try:
            selections = selections_from_labels([var.get() for var in self.alignment_vars])
            montage = align_selected(self.session, selections)
        except MontageError as exc:
            messagebox.showerror("Stacking Error", str(exc))
            return
        self.set_status(f"Aligned montage: {describe_stack(montage)}")

    def _add_scale_bar(self) -> None:
        stack = self._active_image()
        if stack is None:
            return
        try:
            width = parse_positive_float(self.scale_bar_width_var.get(), "Scale bar width")
            options = ScaleBarOptions(width_units=width, location=self.scale_bar_location_var.get())
            result = add_scale_bar(stack, options)
        except ValueError as exc:
            messagebox.showerror("Scale Bar", str(exc))
            return
        self.session.show(result)

    def _open_properties(self) -> None:
        stack = self._active_image()
        if stack is not None:
            PropertiesDialog(self, stack)

    def _add_time_bar(self) -> None:
        stack = self._active_image()
        if stack is None:
            return
        try:
            result = add_time_bar(stack, TimeBarOptions())
        except ValueError as exc:
            messagebox.showerror("Time Bar", str(exc))
            return
        self.session.show(result)

    def _scale_and_export(self) -> None:
        stack = self._active_image()
        if stack is None:
            return
        path = filedialog.asksaveasfilename(
            title="Export AVI",
            defaultextension=".avi",
            initialfile=f"{Path(stack.title).stem}.avi",
            filetypes=[("AVI", "*.avi"), ("All files", "*.*")],
        )
        if not path:
            return
        settings = self.session.settings
        try:
            count = scale_and_export(
                stack,
                path,
                factor=settings.export_scale,
                default_fps=settings.default_movie_fps,
            )
        except OptionalFeatureError as exc:
            messagebox.showinfo("OpenCV Not Found", str(exc))
            return
        except (OSError, ValueError) as exc:
            messagebox.showerror("Export failed", str(exc))
            return
        self.set_status(f"Exported {count} frame(s) to {os.path.basename(path)}")

    def _close_generated(self) -> None:
        try:
            closed = self.session.close_generated()
        except NoImageError as exc:
            messagebox.showerror("Error", str(exc))
            return
        self.set_status(f"Closed {closed} generated image(s).")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Split, merge and montage microscopy channels for figures.")
    parser.add_argument("paths", nargs="*", help="Multi-page TIFF, or one image per channel")
    parser.add_argument("--verbose", action="store_true", help="Log debug messages")
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    root = TkinterDnD.Tk() if DND_AVAILABLE else tk.Tk()
    app = ChannelMontageApp(root, paths=args.paths or None)
    app.mainloop()


if __name__ == "__main__":
    main()
