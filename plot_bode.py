from pylab import figure, semilogx, show, subplot, xlabel, ylabel

from scope import await_, main, sweep


await_(main())
result = sweep(20, 20000, 100, 200)

figure(1)
subplot(2, 1, 1)
semilogx(result.frequencies, result.magnitudes)
ylabel("Magnitude (dB)")
subplot(2, 1, 2)
semilogx(result.frequencies, result.phases)
xlabel("Frequency (Hz)")
ylabel("Phase (°)")

for frequency, magnitude, phase, invalid in zip(result.frequencies, result.magnitudes, result.phases, result.invalid):
    if invalid:
        print(f"No signal at {frequency:.0f}Hz")
    elif -3.5 < magnitude < -2.5:
        print(f"Found -3dB point near {frequency:.0f}Hz, phase {phase:.0f}°")

show()
