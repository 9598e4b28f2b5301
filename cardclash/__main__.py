from cardclash.main import main

main()
