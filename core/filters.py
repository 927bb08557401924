# Copyright (C) 2026 grodz
#
# This file is part of Encore.
#
# Encore is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""Filter presets mapped to Lavalink filter parameters."""

import mafic

from core.session import FilterPreset

# Lavalink label for the single active preset filter
FILTER_LABEL = "preset"

# 15-band equalizer gains (-0.25 to 1.0). Low bands boosted, mids slightly cut.
BASS_BOOST_GAINS = [0.30, 0.25, 0.20, 0.15, 0.10, 0.05, 0.0, -0.05, -0.05, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0]

# speed, pitch, rate
TIMESCALES = {
    FilterPreset.NIGHTCORE: (1.2, 1.2, 1.0),
    FilterPreset.VAPORWAVE: (0.85, 0.8, 1.0),
}


def build_filter(preset: FilterPreset) -> mafic.Filter | None:
    """Build the mafic filter for a preset. None means no filter."""
    if preset == FilterPreset.BASS_BOOST:
        bands = [mafic.EQBand(band=i, gain=gain) for i, gain in enumerate(BASS_BOOST_GAINS)]
        return mafic.Filter(equalizer=mafic.Equalizer(bands=bands))

    if preset in TIMESCALES:
        speed, pitch, rate = TIMESCALES[preset]
        return mafic.Filter(timescale=mafic.Timescale(speed=speed, pitch=pitch, rate=rate))

    if preset == FilterPreset.KARAOKE:
        # Vocal band around 220Hz attenuated, mono level for centered vocals
        return mafic.Filter(
            karaoke=mafic.Karaoke(level=1.0, mono_level=1.0, filter_band=220.0, filter_width=100.0)
        )

    return None
