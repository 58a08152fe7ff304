import math

import ezdxf
import pytest

from dxf_to_gcode import (
    ArcEntity,
    CircleEntity,
    DxfParser,
    EllipseEntity,
    EntitySourceError,
    LineEntity,
    SegmentCollector,
    UnsupportedEntity,
    collect_segments,
    dxf_to_gcode,
    generate_gcode,
    main,
    toolpath_for_entities,
)
from gcode_settings import ConfigurationError, GcodeSettings, load_settings

PLAIN = GcodeSettings(starting_gcode="G90", ending_gcode="M2\n")


@pytest.fixture
def drawing(tmp_path):
    doc = ezdxf.new()
    msp = doc.modelspace()
    msp.add_line((0, 0), (10, 0))
    msp.add_line((10, 0), (10, 10))
    msp.add_circle((50, 50), 5)
    msp.add_arc((0, 0), 5, 0, 90)
    msp.add_ellipse((20, 0), major_axis=(4, 0), ratio=0.5)
    msp.add_text("not cut")
    path = tmp_path / "drawing.dxf"
    doc.saveas(path)
    return path


class TestPipeline:
    def test_two_lines(self):
        entities = [LineEntity((0.0, 0.0), (10.0, 0.0)), LineEntity((10.0, 0.0), (10.0, 10.0))]
        assert generate_gcode(entities, PLAIN) == (
            "G90\n"
            "G0 Z50 F1800\n"
            "G0 X0 Y0 F3000\n"
            "G0 Z0 F1800\n"
            "G1 X10 Y0 F600\n"
            "G1 X10 Y10 F600\n"
            "M2\n"
        )

    def test_circle_is_cut_without_lifting(self):
        n = max(3, math.ceil(math.pi / math.acos(5 / 5.01)))
        text = generate_gcode([CircleEntity((0.0, 0.0), 5.0)], PLAIN)
        lines = text.splitlines()
        assert sum(line.startswith("G1 ") for line in lines) == n
        assert sum(line.startswith("G0 X") for line in lines) == 1

    def test_repeatable(self):
        entities = [
            CircleEntity((0.0, 0.0), 5.0),
            ArcEntity((20.0, 0.0), 3.0, 0.0, math.pi),
            EllipseEntity((-20.0, 0.0), (6.0, 2.0), 0.3),
            LineEntity((5.0, 0.0), (20.0, 0.0)),
        ]
        assert generate_gcode(entities, PLAIN) == generate_gcode(list(entities), PLAIN)

    def test_unsupported_and_malformed_entities_are_skipped(self):
        collector = SegmentCollector(0.01)
        segments = collector.collect([
            UnsupportedEntity("SPLINE", "2A"),
            CircleEntity((0.0, 0.0), 0.0, "2B"),
            LineEntity((0.0, 0.0), (1.0, 0.0), "2C"),
        ])
        assert len(segments) == 1
        assert [handle for handle, _ in collector.skipped] == ["2A", "2B"]

    def test_invalid_settings_rejected(self):
        with pytest.raises(ConfigurationError):
            generate_gcode([LineEntity((0.0, 0.0), (1.0, 0.0))], GcodeSettings(max_error=0))

    def test_arc_reaches_both_ends(self):
        trail = toolpath_for_entities([ArcEntity((0.0, 0.0), 10.0, 0.0, math.pi / 2)], GcodeSettings())
        points = {p for seg in trail for p in (seg.start, seg.end)}
        assert any(p == pytest.approx((10.0, 0.0), abs=0.01) for p in points)
        assert any(p == pytest.approx((0.0, 10.0), abs=0.01) for p in points)

    def test_nothing_to_cut(self):
        assert generate_gcode([], PLAIN) == "G90\nM2\n"


class TestDxfParser:
    def test_decodes_supported_entities(self, drawing):
        entities = DxfParser().parse_file(drawing)
        assert [type(e) for e in entities] == [
            LineEntity, LineEntity, CircleEntity, ArcEntity, EllipseEntity, UnsupportedEntity,
        ]
        line, _, circle, arc, ellipse, text = entities
        assert line.start == (0.0, 0.0) and line.end == (10.0, 0.0)
        assert circle.center == (50.0, 50.0) and circle.radius == 5.0
        assert arc.start_angle == pytest.approx(0.0)
        assert arc.end_angle == pytest.approx(math.pi / 2)
        assert arc.reversed is False
        assert ellipse.major_axis == (4.0, 0.0) and ellipse.ratio == pytest.approx(0.5)
        assert text.dxftype == "TEXT"
        assert line.handle != "?"

    def test_polylines_are_exploded(self):
        doc = ezdxf.new()
        msp = doc.modelspace()
        msp.add_lwpolyline([(0, 0), (10, 0), (10, 10)])
        entities = DxfParser().parse_modelspace(msp)
        assert entities == [
            LineEntity((0.0, 0.0), (10.0, 0.0), "?"),
            LineEntity((10.0, 0.0), (10.0, 10.0), "?"),
        ]

    def test_block_references(self):
        doc = ezdxf.new()
        block = doc.blocks.new("TICK")
        block.add_line((0, 0), (1, 0))
        msp = doc.modelspace()
        msp.add_blockref("TICK", (5, 5))

        expanded = DxfParser().parse_modelspace(msp)
        assert len(expanded) == 1
        assert expanded[0].start == pytest.approx((5.0, 5.0))
        assert expanded[0].end == pytest.approx((6.0, 5.0))

        kept = DxfParser().parse_modelspace(msp, include_inserts=False)
        assert isinstance(kept[0], UnsupportedEntity) and kept[0].dxftype == "INSERT"

    def test_mirrored_arc(self):
        doc = ezdxf.new()
        msp = doc.modelspace()
        msp.add_arc((0, 0), 5, 0, 90, dxfattribs={"extrusion": (0, 0, -1)})
        (arc,) = DxfParser().parse_modelspace(msp)
        assert arc.reversed is True
        assert arc.start_angle == pytest.approx(math.pi)
        assert arc.end_angle == pytest.approx(math.pi / 2)

        segments = collect_segments([arc], 0.01)
        # OCS quadrant I lands in WCS quadrant II
        for seg in segments:
            assert seg.start[0] <= 0.01 and seg.start[1] >= -0.01

    def test_tilted_circle_is_unsupported(self):
        doc = ezdxf.new()
        msp = doc.modelspace()
        msp.add_circle((0, 0), 5, dxfattribs={"extrusion": (1, 0, 0)})
        (entity,) = DxfParser().parse_modelspace(msp)
        assert isinstance(entity, UnsupportedEntity)

    def test_missing_file(self, tmp_path):
        with pytest.raises(EntitySourceError):
            DxfParser().parse_file(tmp_path / "missing.dxf")

    def test_not_a_dxf(self, tmp_path):
        path = tmp_path / "broken.dxf"
        path.write_text("this is not a drawing\n", encoding="utf-8")
        with pytest.raises(EntitySourceError):
            DxfParser().parse_file(path)

    def test_dxf_to_gcode(self, drawing):
        text = dxf_to_gcode(drawing, PLAIN)
        assert text.startswith("G90\nG0 Z50 F1800\nG0 X0 Y0 F3000\n")
        assert text.endswith("M2\n")
        assert text == dxf_to_gcode(drawing, PLAIN)


class TestMain:
    def test_writes_gcode(self, drawing, tmp_path, capsys):
        out = tmp_path / "out" / "part.gcode"
        assert main([str(drawing), "-o", str(out), "--feedrate", "1200", "--repetitions", "2"]) == 0
        text = out.read_text()
        assert "G1 X10 Y10 F1200" in text
        assert text.count("G1 X10 Y10 F1200") == 2
        assert "Saved G-code" in capsys.readouterr().out

    def test_default_output_path(self, drawing):
        assert main([str(drawing)]) == 0
        assert drawing.with_suffix(".gcode").exists()

    def test_settings_file_and_preview(self, drawing, tmp_path):
        conf = tmp_path / "settings.yaml"
        conf.write_text("travel_feedrate: 4500\n", encoding="utf-8")
        saved = tmp_path / "effective.yaml"
        png = tmp_path / "preview.png"
        out = tmp_path / "part.gcode"
        argv = [str(drawing), "-o", str(out), "--settings", str(conf), "--lift-height", "-4",
                "--save-settings", str(saved), "--preview", str(png)]
        assert main(argv) == 0
        assert "G0 X0 Y0 F4500" in out.read_text()
        assert load_settings(saved).lift_height == -4
        assert png.stat().st_size > 0

    def test_bad_setting(self, drawing, tmp_path, capsys):
        out = tmp_path / "part.gcode"
        assert main([str(drawing), "-o", str(out), "--max-error", "0"]) == 1
        assert not out.exists()
        assert "max_error" in capsys.readouterr().err

    def test_missing_input(self, tmp_path):
        out = tmp_path / "part.gcode"
        assert main([str(tmp_path / "missing.dxf"), "-o", str(out)]) == 1
        assert not out.exists()

    def test_rejects_other_files(self, tmp_path):
        with pytest.raises(SystemExit):
            main([str(tmp_path / "drawing.svg")])
